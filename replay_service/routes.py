from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from historical_replay.errors import InvalidTransition, NotFoundError, ValidationError

from .commands import ReplayCommands

router = APIRouter()

# The commands object is created by the application and bound at startup.
_bound_commands: Optional[ReplayCommands] = None

Timestamp = Union[int, str]


def bind_commands(commands: Optional[ReplayCommands]):
    global _bound_commands
    _bound_commands = commands


def _commands() -> ReplayCommands:
    if _bound_commands is None:
        raise HTTPException(status_code=500, detail="replay commands not bound")
    return _bound_commands


async def _guard(coro):
    try:
        return await coro
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


class CreateBatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    symbol: str
    start: Timestamp
    end: Timestamp
    step: str = "4h"
    max_samples: Optional[int] = Field(None, gt=0)
    data_source: Optional[str] = None
    batch_id: Optional[str] = None


class LabelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    horizon: str = "MICRO"
    symbol: Optional[str] = None
    limit: int = Field(100, gt=0, le=10000)
    batch_id: Optional[str] = None


class BaselineRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    batch_id: Optional[str] = None
    from_ts: Optional[Timestamp] = None
    to_ts: Optional[Timestamp] = None
    symbol: Optional[str] = None


@router.post("/replay/batches", status_code=202)
async def create_batch(req: CreateBatchRequest) -> Dict[str, Any]:
    return await _guard(_commands().create_batch(**req.model_dump()))


@router.get("/replay/batches")
async def list_batches() -> List[Dict[str, Any]]:
    return await _commands().list_batches()


@router.get("/replay/batches/{batch_id}")
async def get_batch_status(batch_id: str) -> Dict[str, Any]:
    return await _guard(_commands().get_batch_status(batch_id))


@router.get("/replay/batches/{batch_id}/results")
async def get_batch_results(batch_id: str, limit: int = 100, offset: int = 0) -> Dict[str, Any]:
    return await _guard(_commands().get_batch_results(batch_id, limit, offset))


@router.get("/replay/batches/{batch_id}/failures")
async def get_batch_failures(batch_id: str) -> Dict[str, Any]:
    failures = await _guard(_commands().get_batch_failures(batch_id))
    return {"count": len(failures), "items": failures}


@router.post("/replay/batches/{batch_id}/pause")
async def pause_batch(batch_id: str) -> Dict[str, Any]:
    return await _guard(_commands().pause_batch(batch_id))


@router.post("/replay/batches/{batch_id}/resume")
async def resume_batch(batch_id: str) -> Dict[str, Any]:
    return await _guard(_commands().resume_batch(batch_id))


@router.post("/labeling/run")
async def run_labeling(req: LabelRequest) -> Dict[str, Any]:
    return await _guard(_commands().label_outcomes(**req.model_dump()))


@router.post("/labeling/states/{state_id}")
async def label_state(state_id: int, horizon: str = "MICRO") -> Dict[str, Any]:
    return await _guard(_commands().label_state(state_id, horizon))


@router.get("/labeling/status")
async def labeling_status(batch_id: Optional[str] = None, symbol: Optional[str] = None) -> Dict[str, Any]:
    return await _guard(_commands().get_labeling_status(batch_id, symbol))


@router.get("/scoreboard")
async def scoreboard(batch_id: Optional[str] = None, from_ts: Optional[str] = None,
                     to_ts: Optional[str] = None, symbol: Optional[str] = None) -> Dict[str, Any]:
    return await _guard(_commands().get_scoreboard(batch_id, from_ts, to_ts, symbol))


@router.get("/scoreboard/summary")
async def scoreboard_summary(batch_id: Optional[str] = None, from_ts: Optional[str] = None,
                             to_ts: Optional[str] = None, symbol: Optional[str] = None) -> Dict[str, Any]:
    return await _guard(_commands().get_scoreboard_summary(
        batch_id=batch_id, from_ts=from_ts, to_ts=to_ts, symbol=symbol))


@router.post("/scoreboard/baselines", status_code=201)
async def save_baseline(req: BaselineRequest) -> Dict[str, Any]:
    data = req.model_dump()
    return await _guard(_commands().save_baseline(data.pop("name"), **data))


@router.get("/scoreboard/baselines")
async def list_baselines() -> List[Dict[str, Any]]:
    return await _commands().list_baselines()


@router.get("/scoreboard/baselines/{baseline_id}/compare")
async def compare_baseline(baseline_id: int, batch_id: Optional[str] = None, from_ts: Optional[str] = None,
                           to_ts: Optional[str] = None, symbol: Optional[str] = None) -> Dict[str, Any]:
    return await _guard(_commands().compare_to_baseline(
        baseline_id, batch_id=batch_id, from_ts=from_ts, to_ts=to_ts, symbol=symbol))


@router.delete("/scoreboard/baselines/{baseline_id}")
async def delete_baseline(baseline_id: int) -> Dict[str, Any]:
    await _guard(_commands().delete_baseline(baseline_id))
    return {"deleted": baseline_id}


@router.get("/data/coverage/{symbol}")
async def data_coverage(symbol: str) -> Dict[str, Any]:
    coverage = await _guard(_commands().get_data_coverage(symbol))
    return {"symbol": symbol, "series": coverage}


@router.get("/jobs/gate")
async def job_gate() -> Dict[str, Any]:
    return _commands().get_job_gate_status()
