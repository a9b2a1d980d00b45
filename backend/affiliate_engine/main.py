"""
Affiliate Engine API

FastAPI application wiring: logging, CORS, routers and the Inngest serve
endpoint (/api/inngest).

Run locally:
    uvicorn affiliate_engine.main:app --reload --app-dir backend
"""

import os
import logging

import inngest.fast_api
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from affiliate_engine.inngest.client import inngest_client
from affiliate_engine.inngest.functions import all_functions
from affiliate_engine.routers import affiliate, webhooks
from affiliate_engine.routers.admin import router as admin_router

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Affiliate Engine API",
        description="Referral tracking, commission accrual and affiliate payouts",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(affiliate.router)
    app.include_router(admin_router)
    app.include_router(webhooks.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    inngest.fast_api.serve(app, inngest_client, all_functions)

    logger.info(f"Affiliate engine started with {len(all_functions)} Inngest functions")
    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("affiliate_engine.main:app", host="0.0.0.0", port=port, reload=True)
