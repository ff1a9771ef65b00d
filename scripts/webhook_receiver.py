"""Local merchant endpoint for exercising webhook delivery.

Verifies `X-Webhook-Signature` against the raw body and answers 200, or 401 on
a bad signature. `--fail` answers 500 to every call to watch the retry
schedule play out.
"""

import argparse

import uvicorn
from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

from paysettle.services.webhooks.signing import verify_signature


def build_app(secret: str, always_fail: bool = False) -> FastAPI:
    app = FastAPI(title="Webhook Receiver")

    @app.post("/webhook")
    async def receive(request: Request, x_webhook_signature: str | None = Header(default=None)):
        body = await request.body()
        if always_fail:
            return JSONResponse(status_code=500, content={"ok": False})
        if not x_webhook_signature or not verify_signature(secret, body, x_webhook_signature):
            print("Webhook rejected: bad signature")
            return JSONResponse(status_code=401, content={"ok": False, "error": "invalid signature"})
        print(f"Webhook received: {body.decode('utf-8')}")
        return {"ok": True}

    return app


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=4000)
    parser.add_argument("--secret", default="whsec_test_abc123")
    parser.add_argument("--fail", action="store_true")
    args = parser.parse_args()
    uvicorn.run(build_app(args.secret, args.fail), host=args.host, port=args.port)
