import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from subscription_engine.config import get_settings
from subscription_engine.database import Base, engine
from subscription_engine.routers import subscription

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Subscription Engine",
    description="Subscription lifecycle and payment reconciliation for Paystack",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().app_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(subscription.router)


@app.get("/health")
def health_check():
    return {"status": "healthy"}
