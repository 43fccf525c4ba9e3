from inboxguard.api.triage import router as triage_router

__all__ = ["triage_router"]
