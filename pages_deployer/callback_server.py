"""
Local receiver for evaluation callbacks.

Run it next to the deployer and use its URL as ``evaluation_url`` to see
exactly what the deployer reports when a task finishes:

    python -m pages_deployer.callback_server

Then submit tasks with:
    http://localhost:8001/evaluation-callback
"""

import json
from datetime import datetime, timezone
from typing import Dict, List

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .logs import logger
from .models import EvaluationPayload

REQUIRED_FIELDS = list(EvaluationPayload.model_fields)


def create_callback_app() -> FastAPI:
    app = FastAPI(title="Evaluation Callback Receiver")
    callbacks_received: List[Dict] = []

    @app.post("/evaluation-callback")
    async def evaluation_callback(request: Request):
        try:
            body = await request.json()
        except json.JSONDecodeError as e:
            logger.error(f"[CALLBACK] Body is not JSON: {e}")
            return JSONResponse(status_code=400, content={"status": "error", "message": "Body is not JSON"})
        if not isinstance(body, dict):
            return JSONResponse(status_code=400, content={"status": "error", "message": "Body must be a JSON object"})

        missing = [f for f in REQUIRED_FIELDS if f not in body]
        callback_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "body": body,
            "missing_fields": missing,
            "client_ip": request.client.host if request.client else "unknown",
        }
        callbacks_received.append(callback_data)

        logger.info(f"[CALLBACK] Received at {callback_data['timestamp']}:\n{json.dumps(body, indent=2)}")
        if missing:
            logger.warning(f"[CALLBACK] Payload is missing fields: {', '.join(missing)}")

        return {
            "status": "success",
            "message": "Callback received and logged",
            "timestamp": callback_data["timestamp"],
            "missing_fields": missing,
        }

    @app.get("/callbacks")
    async def get_callbacks():
        return {"total_callbacks": len(callbacks_received), "callbacks": callbacks_received}

    @app.get("/callbacks/latest")
    async def get_latest_callback():
        if not callbacks_received:
            return JSONResponse(status_code=404, content={"message": "No callbacks received yet"})
        return callbacks_received[-1]

    @app.get("/clear")
    async def clear_callbacks():
        count = len(callbacks_received)
        callbacks_received.clear()
        return {"message": f"Cleared {count} callbacks", "remaining": len(callbacks_received)}

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "callbacks_received": len(callbacks_received),
        }

    return app


app = create_callback_app()


if __name__ == "__main__":
    print("Evaluation callback receiver on http://localhost:8001/evaluation-callback")
    uvicorn.run(app, host="0.0.0.0", port=8001, log_level="info")
