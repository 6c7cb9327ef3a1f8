"""ASGI application for the creator marketplace billing API."""
from __future__ import annotations

import logging
import math
import os

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import app_context
from .app.routes.billing import router as billing_router
from .app.routes.webhooks import router as webhooks_router
from .auth import get_current_account
from .config import load_billing_config

load_dotenv()


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "marketplace_db"),
    user=os.getenv("DB_USER", "marketplace_user"),
    password=os.getenv("DB_PASSWORD", "marketplace_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def get_conn():
    return psycopg2.connect(**DB_CFG)


billing_config = load_billing_config()

app_context.configure(
    get_conn=get_conn,
    get_current_account=get_current_account,
    billing_config=billing_config,
)

app = FastAPI(title="Creator Marketplace API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)
app.include_router(webhooks_router)
