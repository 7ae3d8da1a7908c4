from fastapi import FastAPI
from webhook import router
from config import SWEEP_ENABLED
from sweeper import start_scheduler
import uvicorn

app = FastAPI(title="Pair-Guardian")
app.include_router(router)


@app.on_event("startup")
async def _start_sweep():
    if SWEEP_ENABLED:
        app.state.scheduler = start_scheduler()


@app.on_event("shutdown")
async def _stop_sweep():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler:
        scheduler.shutdown(wait=False)


if __name__=="__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
