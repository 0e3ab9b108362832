"""Service dependencies resolved from application state."""

from fastapi import Request

from services.credits import CreditLedger
from services.video_generation import VideoOrchestrator, build_video_orchestrator


def get_video_orchestrator(request: Request) -> VideoOrchestrator:
    orchestrator = getattr(request.app.state, "video_orchestrator", None)
    if orchestrator is None:
        orchestrator = build_video_orchestrator()
        request.app.state.video_orchestrator = orchestrator
    return orchestrator


def get_credit_ledger(request: Request) -> CreditLedger:
    return get_video_orchestrator(request).ledger
