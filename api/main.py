"""
FastAPI Backend for the Adaptive Practice Engine

Exposes the adaptive session service over HTTP:
- Session lifecycle: start, next question, submit answer, end
- Module-routed mock tests: complete module, scaled scores
- Weakness reports per learner and subject

Scoring happens inside the request; persistence is flushed in a background task.
"""

import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import settings
from adaptive.engine import AdaptiveEngine, EndOfPool, SessionConfig, SessionHandle, SessionState
from adaptive.errors import ValidationError
from adaptive.item_bank import ItemBank
from adaptive.skill_graph import SkillGraph
from redis_store import create_store

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ==================== Initialize ====================

app = FastAPI(
    title="Adaptive Practice Engine API",
    description="Adaptive testing, proficiency estimation and weakness analysis",
    version=settings.version
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Shared components
skill_graph = SkillGraph.from_file(settings.skill_graph_path)
item_bank = ItemBank.from_directory(settings.item_bank_dir, skill_graph)
store = create_store(settings)
engine = AdaptiveEngine(item_bank, store=store, settings=settings, skill_graph=skill_graph)


def get_handle(session_id: str) -> SessionHandle:
    handle = engine.get_session(session_id)
    if handle is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return handle


# ==================== Request/Response Models ====================

class StartSessionRequest(BaseModel):
    user_id: str
    mode: str = "irt"
    subject: Optional[str] = None
    skill_id: Optional[str] = None
    mock_test_id: Optional[str] = None
    max_questions: Optional[int] = None
    difficulty_mix: Optional[Dict[str, float]] = None


class SessionRequest(BaseModel):
    session_id: str


class SubmitAnswerRequest(BaseModel):
    session_id: str
    question_id: str
    answer_key: str
    time_spent_ms: int


class NextQuestionResponse(BaseModel):
    session_id: str
    done: bool
    reason: Optional[str] = None
    question: Optional[dict] = None
    selection_reason: Optional[str] = None


class SubmitAnswerResponse(BaseModel):
    is_correct: bool
    proficiency: dict
    module_result: Optional[dict] = None
    estimation_error: Optional[str] = None


class ModuleCompletionResponse(BaseModel):
    module_result: dict
    scaled_score: Optional[int] = None
    next_path: Optional[str] = None
    section_complete: bool
    total_score: Optional[int] = None
    state: str


class WeaknessReportResponse(BaseModel):
    user_id: str
    subject: Optional[str] = None
    weaknesses: List[dict]


# ==================== Core Endpoints ====================

@app.get("/")
def root():
    return {
        "status": "ok",
        "message": f"{settings.service_name} is running",
        "version": settings.version,
        "persistence": settings.persistence_backend,
        "questions_loaded": len(item_bank.questions),
        "skills_loaded": len(skill_graph.skills),
    }


@app.post("/start-session")
async def start_session(request: StartSessionRequest):
    config = SessionConfig(
        user_id=request.user_id,
        mode=request.mode,
        subject=request.subject,
        skill_id=request.skill_id,
        mock_test_id=request.mock_test_id,
        max_questions=request.max_questions,
        difficulty_mix=request.difficulty_mix,
    )
    try:
        handle = await engine.start_session(config)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return handle.to_dict()


@app.post("/next-question", response_model=NextQuestionResponse)
async def next_question(request: SessionRequest, background_tasks: BackgroundTasks):
    handle = get_handle(request.session_id)
    try:
        result = await engine.next_question(handle)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if isinstance(result, EndOfPool):
        if handle.state == SessionState.SESSION_COMPLETE:
            # Completed sessions leave the registry; write their archive now
            background_tasks.add_task(engine.flush_persistence, handle)
        return NextQuestionResponse(session_id=handle.session_id, done=True, reason=result.reason)

    return NextQuestionResponse(
        session_id=handle.session_id,
        done=False,
        question=result.to_dict(),
        selection_reason=handle.selections[-1]["reason"] if handle.selections else None,
    )


@app.post("/submit-answer", response_model=SubmitAnswerResponse)
def submit_answer(request: SubmitAnswerRequest, background_tasks: BackgroundTasks):
    handle = get_handle(request.session_id)
    try:
        outcome = engine.submit_answer(handle, request.question_id, request.answer_key, request.time_spent_ms)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    background_tasks.add_task(engine.flush_persistence, handle)

    return SubmitAnswerResponse(
        is_correct=outcome.is_correct,
        proficiency=outcome.updated_proficiency.to_dict(),
        module_result=outcome.module_result.to_dict() if outcome.module_result else None,
        estimation_error=str(outcome.estimation_error) if outcome.estimation_error else None,
    )


@app.post("/complete-module", response_model=ModuleCompletionResponse)
def complete_module(request: SessionRequest, background_tasks: BackgroundTasks):
    handle = get_handle(request.session_id)
    try:
        completion = engine.complete_module(handle)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if handle.state == SessionState.SESSION_COMPLETE:
        background_tasks.add_task(engine.flush_persistence, handle)

    return ModuleCompletionResponse(
        module_result=completion.module_result.to_dict(),
        scaled_score=completion.scaled_score,
        next_path=completion.next_path,
        section_complete=completion.section_complete,
        total_score=completion.total_score,
        state=handle.state.value,
    )


@app.post("/end-session")
async def end_session(request: SessionRequest):
    handle = get_handle(request.session_id)
    summary = await engine.end_session(handle)
    return summary


@app.get("/session/{session_id}")
def get_session_state(session_id: str):
    """Live session state with progress summary."""
    handle = get_handle(session_id)
    state = handle.to_dict()
    state["progress"] = engine.get_progress_summary(handle, subject=handle.config.subject)
    return state


@app.get("/weakness-report/{user_id}", response_model=WeaknessReportResponse)
async def weakness_report(user_id: str, subject: Optional[str] = None):
    weaknesses = await engine.get_weakness_report(user_id, subject=subject)
    return WeaknessReportResponse(
        user_id=user_id,
        subject=subject,
        weaknesses=[w.to_dict() for w in weaknesses],
    )


# ==================== Run Server ====================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
