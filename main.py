# Local entry point: `python main.py` serves the relay with uvicorn.
import uvicorn

from backend.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run("backend.api.index:app", host="127.0.0.1", port=settings.port)
