# app/geo_calc.py
"""
Flat-earth (equirectangular) geo math and Area codes.

Area codes let the record store answer "what was near point P" with a plain
equality filter: every track sample is stored with 1..4 area codes, and a
search filters by the single area code of the searched point.
"""
import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Tuple


# Earth mean radius in meters: r = (2*a + b) / 3 with a, b the equatorial
# and polar radii. The sphere error does not matter at the level of an Area.
EARTH_R = 6_371_009

# Circumference of Earth (K = 2*r*PI), ~40,030,230 m
EARTH_K = 2 * EARTH_R * math.pi

# Area indices are shifted by this to be non-negative, then packed in base 10
AREA_INDEX_SHIFT = 50_000
AREA_INDEX_BASE = 100_000


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float

    def valid(self) -> bool:
        """Latitude must be in -90..90, longitude in -180..180."""
        return -90 <= self.lat <= 90 and -180 <= self.lng <= 180


# =====================================================================
# Projection
# =====================================================================
def dist_from_equator(lat: float) -> float:
    """Distance of any point at the given latitude from the Equator, in meters."""
    return EARTH_K / 360 * lat


def dist_from_meridian(lat: float, lng: float) -> float:
    """Distance of the given point from the Greenwich meridian, in meters."""
    # Radius of the Earth circle at the given latitude: cos(phi) = cr / r
    cr = math.cos(math.radians(lat)) * EARTH_R
    crk = cr * 2 * math.pi
    return crk / 360 * lng


def distance(a: GeoPoint, b: GeoPoint) -> int:
    """
    Distance between 2 points in meters, using the Pythagorean theorem on the
    projected coordinates. Accurate enough below 1,000 km; NOT a great-circle
    distance (the alert thresholds are tuned against this one).
    """
    d_eq = dist_from_equator(a.lat) - dist_from_equator(b.lat)
    d_mer = dist_from_meridian(a.lat, a.lng) - dist_from_meridian(b.lat, b.lng)
    return int(math.sqrt(d_eq * d_eq + d_mer * d_mer))


def within(a: GeoPoint, b: GeoPoint, radius_m: int) -> bool:
    return distance(a, b) <= radius_m


# =====================================================================
# Area codes
# =====================================================================
def cell_indices(area_size: int, point: GeoPoint) -> Tuple[int, int, int, int]:
    """
    Projected distances (whole meters) and indices of the Area the point falls in.

    Returns:
        (d_eq, d_mer, c_eq, c_mer)

    Both the meter floor and the index division round toward negative
    infinity: index -1 covers [-area_size, 0), never [-area_size+1, area_size).
    """
    d_eq = math.floor(dist_from_equator(point.lat))
    d_mer = math.floor(dist_from_meridian(point.lat, point.lng))

    # d_eq ~ -10,000,000..10,000,000 and d_mer ~ -20,000,000..20,000,000 meters;
    # with area_size = 2,000 that gives c_eq ~ -5,000..5,000, c_mer ~ -10,000..10,000
    c_eq = d_eq // area_size
    c_mer = d_mer // area_size
    return d_eq, d_mer, c_eq, c_mer


def pack_area_indices(c_eq: int, c_mer: int) -> int:
    """Pack 2 area indices into one Area code, 5 decimal digits each."""
    return (c_eq + AREA_INDEX_SHIFT) * AREA_INDEX_BASE + (c_mer + AREA_INDEX_SHIFT)


def area_code_for_point(area_size: int, point: GeoPoint) -> int:
    """Area code to filter by when searching for records near the point."""
    _, _, c_eq, c_mer = cell_indices(area_size, point)
    return pack_area_indices(c_eq, c_mer)


def area_codes_for_point(area_size: int, point: GeoPoint) -> List[int]:
    """
    Area codes to store with a track record so it can be found by location.

    Returns the code of the Area the point falls in, one side neighbour per
    axis (south or north, west or east, by which half of the Area the point is
    in), and the diagonal neighbour if the point is within area_size // 2 of
    the corner shared with it.

    Filtering by area_code_for_point() of a search location then:
        - includes every record within area_size / 2,
        - may include records up to (0.5 + sqrt(2)) * area_size (~1.914x),
        - never includes records beyond that.
    """
    d_eq, d_mer, c_eq, c_mer = cell_indices(area_size, point)

    codes = [pack_area_indices(c_eq, c_mer)]

    # Location inside the Area, 0..area_size-1
    in_eq = d_eq - c_eq * area_size
    in_mer = d_mer - c_mer * area_size

    # Odd sizes round down: the south/west halves get the middle meter
    half = area_size // 2

    south = in_eq <= half
    west = in_mer <= half

    n_eq = c_eq - 1 if south else c_eq + 1
    n_mer = c_mer - 1 if west else c_mer + 1

    # Side neighbours
    codes.append(pack_area_indices(n_eq, c_mer))
    codes.append(pack_area_indices(c_eq, n_mer))

    # Corner neighbour: distances to the edges shared with the chosen neighbours
    y = in_eq if south else area_size - in_eq
    x = in_mer if west else area_size - in_mer
    if x * x + y * y < half * half:
        codes.append(pack_area_indices(n_eq, n_mer))

    return codes


class AreaCodeCache:
    """
    Bounded LRU cache in front of area_codes_for_point().

    Devices often report the same fix repeatedly while parked, so the
    ingestion worker keeps one instance and passes it to the store.
    """

    def __init__(self, maxsize: int = 4096):
        if maxsize <= 0:
            raise ValueError(f"maxsize must be positive, got {maxsize}")
        self.maxsize = maxsize
        self.hits = 0
        self.misses = 0
        self._data: "OrderedDict[Tuple[int, float, float], Tuple[int, ...]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._data)

    def codes_for(self, area_size: int, point: GeoPoint) -> List[int]:
        key = (area_size, point.lat, point.lng)
        codes = self._data.get(key)
        if codes is not None:
            self.hits += 1
            self._data.move_to_end(key)
            return list(codes)

        self.misses += 1
        codes = tuple(area_codes_for_point(area_size, point))
        self._data[key] = codes
        if len(self._data) > self.maxsize:
            self._data.popitem(last=False)
        return list(codes)

    def clear(self) -> None:
        self._data.clear()
        self.hits = 0
        self.misses = 0
