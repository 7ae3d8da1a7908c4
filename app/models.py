import enum
from typing import Optional

from sqlalchemy import (BigInteger, Column, Integer, Text, DateTime, ForeignKey, Double)
from database import Base
from sqlalchemy.sql import func

from geo_calc import GeoPoint

# BIGINT ids do not autoincrement on SQLite
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


class SampleKind(enum.IntEnum):
    TRACK = 0
    START = -1   # tracker start
    STOP  = -2   # tracker stop


class Account(Base):
    __tablename__ = "accounts"
    id            = Column(BigIntPK, primary_key=True, index=True)
    email         = Column(Text, nullable=False)
    contact_email = Column(Text)
    location_name = Column(Text)          # IANA tz name used in alert mails
    created       = Column(DateTime(timezone=True), server_default=func.now())


class Device(Base):
    __tablename__ = "devices"
    id             = Column(BigIntPK, primary_key=True, index=True)
    account_id     = Column(BigInteger, ForeignKey("accounts.id"), index=True, nullable=False)
    name           = Column(Text, nullable=False)
    rand_id        = Column(Text, unique=True, index=True, nullable=False)  # id expected from the tracker
    area_size      = Column(Integer, nullable=False, default=0)   # meters, 0 = not indexed
    logs_retention = Column(Integer, nullable=False, default=0)   # days, 0 = keep forever
    created        = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def indexed(self) -> bool:
        return (self.area_size or 0) > 0

    @property
    def search_precision(self) -> int:
        return (self.area_size or 0) // 2

    @property
    def del_old_logs(self) -> bool:
        return (self.logs_retention or 0) > 0


class Sample(Base):
    __tablename__ = "samples"
    id        = Column(BigIntPK, primary_key=True, index=True)
    device_id = Column(BigInteger, ForeignKey("devices.id"), index=True, nullable=False)
    kind      = Column(Integer, nullable=False, default=SampleKind.TRACK.value)
    lat       = Column(Double)            # NULL for start/stop events
    lng       = Column(Double)
    created   = Column(DateTime(timezone=True), index=True, nullable=False)

    @property
    def sample_kind(self) -> SampleKind:
        return SampleKind(self.kind if self.kind is not None else SampleKind.TRACK)

    @property
    def is_track(self) -> bool:
        return self.sample_kind is SampleKind.TRACK

    @property
    def point(self) -> Optional[GeoPoint]:
        if not self.is_track or self.lat is None or self.lng is None:
            return None
        return GeoPoint(float(self.lat), float(self.lng))

    def __repr__(self):
        return f"<Sample device={self.device_id} {self.sample_kind.name} ({self.lat}, {self.lng}) at {self.created}>"


class SampleAreaCode(Base):
    __tablename__ = "sample_area_codes"
    id        = Column(BigIntPK, primary_key=True)
    sample_id = Column(BigInteger, ForeignKey("samples.id"), index=True, nullable=False)
    area_code = Column(BigInteger, index=True, nullable=False)


class AlertPair(Base):
    __tablename__ = "alert_pairs"
    id                  = Column(BigIntPK, primary_key=True, index=True)
    account_id          = Column(BigInteger, ForeignKey("accounts.id"), index=True, nullable=False)
    asset_device_id     = Column(BigInteger, ForeignKey("devices.id"), nullable=False)
    companion_device_id = Column(BigInteger, ForeignKey("devices.id"))   # NULL = liveness check only
    created             = Column(DateTime(timezone=True), server_default=func.now())
