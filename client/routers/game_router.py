from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from client.config import load_config
from client.schemas import FollowUpQuestion, MoveResult, StateView
from client.services.controller import GameController, build_controller


class CreateSessionRequest(BaseModel):
    room_ref: Optional[str] = None


class AnswerRequest(BaseModel):
    question_id: str = ""
    answer: str


class ToggleRequest(BaseModel):
    enabled: bool


class ActionResponse(BaseModel):
    accepted: bool
    view: StateView


class AnswerResponse(BaseModel):
    result: Optional[MoveResult] = None
    view: StateView


router = APIRouter()

_controller: Optional[GameController] = None


def get_controller() -> GameController:
    global _controller
    if _controller is None:
        _controller = build_controller(load_config())
    return _controller


@router.get("/state", response_model=StateView)
def get_state(ctl: GameController = Depends(get_controller)) -> StateView:
    return ctl.view()


@router.post("/", response_model=ActionResponse)
async def create_session(req: CreateSessionRequest, ctl: GameController = Depends(get_controller)) -> ActionResponse:
    ok = await ctl.create_or_join(req.room_ref)
    return ActionResponse(accepted=ok, view=ctl.view())


@router.post("/{session_id}/load", response_model=ActionResponse)
async def load_session(session_id: str, ctl: GameController = Depends(get_controller)) -> ActionResponse:
    ok = await ctl.load_game(session_id)
    return ActionResponse(accepted=ok, view=ctl.view())


@router.post("/roll", response_model=ActionResponse)
async def roll(ctl: GameController = Depends(get_controller)) -> ActionResponse:
    if ctl.game is None:
        raise HTTPException(status_code=404, detail="no game loaded")
    ok = await ctl.roll()
    return ActionResponse(accepted=ok, view=ctl.view())


@router.get("/question", response_model=Optional[FollowUpQuestion])
async def get_question(ctl: GameController = Depends(get_controller)) -> Optional[FollowUpQuestion]:
    if ctl.game is None:
        raise HTTPException(status_code=404, detail="no game loaded")
    return await ctl.get_follow_up_question()


@router.post("/answer", response_model=AnswerResponse)
async def answer(req: AnswerRequest, ctl: GameController = Depends(get_controller)) -> AnswerResponse:
    if ctl.game is None:
        raise HTTPException(status_code=404, detail="no game loaded")
    result = await ctl.answer_follow_up(req.question_id, req.answer)
    return AnswerResponse(result=result, view=ctl.view())


@router.post("/question/clear", response_model=StateView)
def clear_question(ctl: GameController = Depends(get_controller)) -> StateView:
    ctl.clear_current_question()
    return ctl.view()


@router.post("/surrender", response_model=ActionResponse)
async def surrender(ctl: GameController = Depends(get_controller)) -> ActionResponse:
    if ctl.game is None:
        raise HTTPException(status_code=404, detail="no game loaded")
    ok = await ctl.surrender()
    return ActionResponse(accepted=ok, view=ctl.view())


@router.post("/reconnect", response_model=ActionResponse)
async def reconnect(ctl: GameController = Depends(get_controller)) -> ActionResponse:
    ok = await ctl.reconnect()
    return ActionResponse(accepted=ok, view=ctl.view())


@router.post("/apply-pending", response_model=ActionResponse)
def apply_pending(ctl: GameController = Depends(get_controller)) -> ActionResponse:
    ok = ctl.apply_pending_simulated()
    return ActionResponse(accepted=ok, view=ctl.view())


@router.put("/simulate", response_model=StateView)
def set_simulate(req: ToggleRequest, ctl: GameController = Depends(get_controller)) -> StateView:
    ctl.set_simulate_enabled(req.enabled)
    return ctl.view()


@router.put("/force-roll", response_model=StateView)
def set_force_roll(req: ToggleRequest, ctl: GameController = Depends(get_controller)) -> StateView:
    ctl.set_force_enable_roll(req.enabled)
    return ctl.view()
