"""Routers package."""

from . import (
    health,
    billing,
    subscription,
    webhooks,
    cron,
    admin,
)
