# main.py
import uvicorn

from pages_deployer.config import settings
from pages_deployer.server import app

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
