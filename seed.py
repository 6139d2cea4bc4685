"""Seed a demo user with the default categories and the current month."""

import logging
import os
from decimal import Decimal

from config import get_settings
from database import init_db, session_scope
from models import CurrencyCode
from schemas import OnboardingIn
from services import UserService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def seed() -> bool:
    user_id = os.getenv("SEED_USER_ID")
    email = os.getenv("SEED_EMAIL")
    if not user_id or not email:
        logger.info("Seed skipped. Set SEED_USER_ID and SEED_EMAIL to seed a demo user.")
        return False

    income = Decimal(os.getenv("SEED_INCOME", "5000"))
    currency = CurrencyCode(get_settings().default_currency)

    init_db()
    with session_scope() as session:
        month = UserService(session, user_id).complete_onboarding(
            OnboardingIn(income=income, currency=currency), email
        )
        logger.info("Seeded demo data for %s (%s), month %s", email, user_id, month.label)
    return True


if __name__ == "__main__":
    seed()
