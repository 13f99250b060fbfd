import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .database import engine
from .expiration import sweeper
from .models import Base
from .notifications import dispatcher
from .routers import admin_router, order_router, webhook_router

logger = structlog.get_logger().bind(component="main")

app = FastAPI(
    title="Order Service",
    description="Orders, PagBank payments and stock reconciliation for the e-commerce backend",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Create database tables
Base.metadata.create_all(bind=engine)

# Include routers
app.include_router(order_router.router)
app.include_router(webhook_router.router)
app.include_router(admin_router.router)


@app.on_event("startup")
def _startup() -> None:
    problems = config.validate_pagbank_config()
    if problems:
        logger.warning("PagBank configuration incomplete", problems=problems)
    if config.OUTBOX_ENABLED:
        dispatcher.start()
    if config.SWEEPER_ENABLED:
        sweeper.start()


@app.on_event("shutdown")
def _shutdown() -> None:
    sweeper.stop()
    dispatcher.stop()


@app.get("/")
def root():
    return {
        "service": "Order Service",
        "status": "running",
        "version": "1.0.0"
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "order-service"
    }
