"""
Inngest client.

Event-driven background work runs through Inngest. In development the client
talks to the local dev server; in production events are signed with
INNGEST_SIGNING_KEY / INNGEST_EVENT_KEY read from the environment by the SDK.
"""

import os
import logging

import inngest

logger = logging.getLogger(__name__)

INNGEST_APP_ID = os.getenv("INNGEST_APP_ID", "affiliate-engine")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

inngest_client = inngest.Inngest(
    app_id=INNGEST_APP_ID,
    is_production=ENVIRONMENT == "production",
    logger=logger,
)
