"""Checkpoint inspection endpoints under /api.

Read-only views over stored sessions plus branch creation. Branching only
writes the adjusted checkpoint; the new session is played by the runner
(`main.py replay`).
"""

from fastapi import APIRouter, HTTPException, Request

from pulse_playtest.errors import CheckpointError
from pulse_playtest.storage import CheckpointStore, ReplayOverrides

router = APIRouter()


def _store(request: Request) -> CheckpointStore:
    return request.app.state.store


@router.get("/sessions")
async def list_sessions(request: Request):
    """List every session id with at least one checkpoint."""
    store = _store(request)
    return [
        {"session_id": session_id, "turns": store.list_turns(session_id)}
        for session_id in store.list_sessions()
    ]


@router.get("/sessions/{session_id}/checkpoints")
async def list_checkpoints(session_id: str, request: Request):
    """List the checkpointed turns of a session."""
    turns = _store(request).list_turns(session_id)
    if not turns:
        raise HTTPException(404, "Session not found")
    return turns


@router.get("/sessions/{session_id}/checkpoints/{turn}")
async def get_checkpoint(session_id: str, turn: int, request: Request):
    try:
        return _store(request).load(session_id, turn)
    except CheckpointError as e:
        raise HTTPException(404, str(e))


@router.get("/sessions/{session_id}/latest")
async def get_latest(session_id: str, request: Request):
    try:
        return _store(request).load_latest(session_id)
    except CheckpointError as e:
        raise HTTPException(404, str(e))


@router.post("/sessions/{session_id}/checkpoints/{turn}/branch", status_code=201)
async def branch_checkpoint(session_id: str, turn: int, body: ReplayOverrides, request: Request):
    """Create a new session branched from a checkpoint with overrides applied."""
    store = _store(request)
    try:
        checkpoint = store.load(session_id, turn)
    except CheckpointError as e:
        raise HTTPException(404, str(e))
    try:
        new_id, branched = store.resume(checkpoint, body)
    except ValueError as e:
        raise HTTPException(422, str(e))
    except CheckpointError as e:
        raise HTTPException(409, str(e))
    return {"session_id": new_id, "turn": branched.turn, "lineage": branched.lineage}
