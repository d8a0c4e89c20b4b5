from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from database import SessionLocal
from endpoints.realtime_ws import coordinator

router = APIRouter()


def check_db() -> dict[str, Any]:
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:  # health must degrade, not crash
        return {"ok": False, "error": str(exc)}
    finally:
        db.close()
    return {"ok": True}


@router.get("/health")
def health():
    db = check_db()
    realtime = {
        "ok": True,
        "connections": coordinator.sessions.connection_count,
        "calls": coordinator.calls.active_call_count,
        "pendingWrites": coordinator.writer.pending,
    }
    status = "ok" if db["ok"] else "degraded"
    return JSONResponse(
        {"status": status, "components": {"db": db, "realtime": realtime}},
        status_code=200 if db["ok"] else 503,
    )
