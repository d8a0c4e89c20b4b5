from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import socketio
from routers import api_router
from config import settings
from database import engine, Base
from endpoints.realtime_ws import coordinator, sio
from logs import configure_logging
import models.collab  # ensure model registration
import os
import logging

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("%s starting, Socket.IO on /%s", settings.PROJECT_NAME, settings.SOCKETIO_PATH)
    yield
    # Let in-flight presence and snapshot writes land before exit
    await coordinator.shutdown()


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
# The schema is owned by the main API's migrations; only auto-create for tests
# and local SQLite.
if os.environ.get("TESTING") or engine.url.get_backend_name() == "sqlite":
    Base.metadata.create_all(bind=engine)

app.include_router(api_router, prefix=settings.API_V1_STR)

@app.get("/")
async def root():
    return {"message": "Workspace collaboration realtime service"}

# Serve this one: Socket.IO on /socket.io, everything else falls through to FastAPI
asgi_app = socketio.ASGIApp(sio, other_asgi_app=app, socketio_path=settings.SOCKETIO_PATH)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:asgi_app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
