import os
from decimal import Decimal

# Get DB connection string from environment variables.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./storefront.db")

# Pricing rules applied at checkout.
FREE_SHIPPING_THRESHOLD = Decimal(os.getenv("FREE_SHIPPING_THRESHOLD", "1250000"))
SHIPPING_FEE = Decimal(os.getenv("SHIPPING_FEE", "50000"))

# Bearer token verification.
JWT_SECRET = os.getenv("JWT_SECRET", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Event bus. Publishing is switched off when no host is configured.
RABBITMQ_HOST = os.getenv("RABBITMQ_HOST")
RABBITMQ_USER = os.getenv("RABBITMQ_USER", "guest")
RABBITMQ_PASSWORD = os.getenv("RABBITMQ_PASSWORD", "guest")
EVENTS_EXCHANGE = os.getenv("EVENTS_EXCHANGE", "events")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "console")
