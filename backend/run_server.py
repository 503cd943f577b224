# run_server.py
import uvicorn

from campaign_broker.core.config import settings
from campaign_broker.main import app

if __name__ == "__main__":
    uvicorn.run(
        app,
        host="127.0.0.1",
        port=3235,
        log_level=settings.LOG_LEVEL.lower(),
    )
