"""Free-credit ledger.

Every balance mutation is a single conditional UPDATE so the database, not
this process, decides whether a debit or a daily grant goes through.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import case, or_, select, update

from generation_queue.database import session_scope, utcnow
from generation_queue.exceptions import CreditsRejectedError
from generation_queue.models import GenerationConfig, User
from generation_queue.schemas import CreditsConfig

logger = logging.getLogger(__name__)

CREDITS_CONFIG_KEYS = {
    "credit_cost": "credits_credit_cost",
    "daily_free_credits": "credits_daily_free_credits",
    "max_free_credit_limit": "credits_max_free_credit_limit",
}

DEFAULT_CREDITS_CONFIG = CreditsConfig(
    credit_cost=1,
    daily_free_credits=10,
    max_free_credit_limit=50,
)


def _parse_non_negative_int(value, fallback):
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    if parsed < 0:
        return fallback
    return parsed


@dataclass(frozen=True)
class ConsumeResult:
    ok: bool
    balance: int | None = None
    reason: str | None = None

    @classmethod
    def consumed(cls, balance):
        return cls(ok=True, balance=balance)

    @classmethod
    def rejected(cls, reason):
        return cls(ok=False, reason=reason)


class CreditLedger:
    def __init__(self, session_factory, enabled, clock=utcnow):
        self.session_factory = session_factory
        self.enabled = enabled
        self.clock = clock

    def is_enabled(self):
        return self.enabled

    def get_config(self, session=None):
        with session_scope(self.session_factory, session) as db:
            rows = db.execute(
                select(GenerationConfig.key, GenerationConfig.value).where(
                    GenerationConfig.key.in_(CREDITS_CONFIG_KEYS.values())
                )
            ).all()

        values = {key: value for key, value in rows}
        return CreditsConfig(**{
            field: _parse_non_negative_int(
                values.get(key), getattr(DEFAULT_CREDITS_CONFIG, field)
            )
            for field, key in CREDITS_CONFIG_KEYS.items()
        })

    def update_config(self, config, session=None):
        with session_scope(self.session_factory, session) as db:
            for field, key in CREDITS_CONFIG_KEYS.items():
                value = str(getattr(config, field))
                row = db.execute(
                    select(GenerationConfig).where(GenerationConfig.key == key)
                ).scalar_one_or_none()
                if row is None:
                    db.add(GenerationConfig(key=key, value=value))
                else:
                    row.value = value

        logger.info("Updated credits configuration", extra={"credits_config": config.model_dump()})
        return config

    def get_balance(self, user_id, session=None):
        with session_scope(self.session_factory, session) as db:
            return db.execute(
                select(User.credits_free).where(User.id == user_id)
            ).scalar_one_or_none()

    def is_admin(self, user_id, session=None):
        with session_scope(self.session_factory, session) as db:
            return bool(db.execute(
                select(User.is_admin).where(User.id == user_id)
            ).scalar_one_or_none())

    def grant_daily_if_needed(self, user_id):
        """Top up the user's free credits once per UTC day.

        Returns the balance after the check, or None when the credits system is
        disabled or the user does not exist. Concurrent callers race on the
        same conditional UPDATE, so only one of them can apply the grant.
        """
        if not self.is_enabled():
            return None

        config = self.get_config()
        now = self.clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        cap = config.max_free_credit_limit
        raised = User.credits_free + config.daily_free_credits

        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(User)
                .where(
                    User.id == user_id,
                    or_(
                        User.credits_free_last_grant_at.is_(None),
                        User.credits_free_last_grant_at < day_start,
                    ),
                )
                .values(
                    credits_free=case(
                        (raised > cap, cap),
                        else_=raised,
                    ),
                    credits_free_last_grant_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            balance = self.get_balance(user_id, session=db)

        if result.rowcount:
            logger.info(
                "Granted daily free credits",
                extra={"user_id": user_id, "credits_free": balance},
            )
        return balance

    def try_consume(self, user_id, cost, session=None):
        if not self.is_enabled():
            return ConsumeResult.consumed(None)

        with session_scope(self.session_factory, session) as db:
            if cost <= 0:
                balance = self.get_balance(user_id, session=db)
                if balance is None:
                    return ConsumeResult.rejected(CreditsRejectedError.USER_NOT_FOUND)
                return ConsumeResult.consumed(balance)

            result = db.execute(
                update(User)
                .where(User.id == user_id, User.credits_free >= cost)
                .values(credits_free=User.credits_free - cost)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 0:
                exists = db.execute(select(User.id).where(User.id == user_id)).first()
                if exists is None:
                    return ConsumeResult.rejected(CreditsRejectedError.USER_NOT_FOUND)
                logger.info(
                    "Rejected credit consumption",
                    extra={"user_id": user_id, "cost": cost},
                )
                return ConsumeResult.rejected(CreditsRejectedError.INSUFFICIENT_CREDITS)

            balance = self.get_balance(user_id, session=db)

        return ConsumeResult.consumed(balance)

    def refund(self, user_id, amount, session=None):
        if amount <= 0 or user_id is None:
            return

        with session_scope(self.session_factory, session) as db:
            result = db.execute(
                update(User)
                .where(User.id == user_id)
                .values(credits_free=User.credits_free + amount)
                .execution_options(synchronize_session=False)
            )

        if result.rowcount == 0:
            logger.warning(
                "Refund target user not found",
                extra={"user_id": user_id, "amount": amount},
            )
        else:
            logger.info("Refunded free credits", extra={"user_id": user_id, "amount": amount})
