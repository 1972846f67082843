import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from pulse_playtest.config import get_config
from pulse_playtest.routes import router
from pulse_playtest.storage import CheckpointStore, FileBlobStore

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config.json"


def create_app(data_dir: Path | None = None) -> FastAPI:
    if data_dir is None:
        config = get_config(Path(os.getenv("PULSE_CONFIG", str(DEFAULT_CONFIG_PATH))))
        data_dir = Path(os.getenv("DATA_DIR", config["data_dir"]))

    app = FastAPI(title="Pulse Playtest")
    app.state.store = CheckpointStore(FileBlobStore(data_dir))
    app.include_router(router, prefix="/api")
    return app
