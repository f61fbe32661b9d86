# app/services/ledger_service.py
import logging
from app.core.async_supabase import async_supabase_client, extract_data, extract_error, utc_now
from app.core.cache import profile_cache, profile_cache_key
from app.core.errors import InsufficientCredits, PersistenceFailure
from app.models.user import USERS_TABLE

logger = logging.getLogger(__name__)

# Compare-and-swap attempts before giving up under heavy contention
MAX_DEBIT_ATTEMPTS = 5


class CreditLedger:
    """Guards every change to a user's credit balance.

    Writes are conditional on the balance that was read
    (``UPDATE ... WHERE id = :id AND credits = :read``), so two concurrent
    debits cannot both spend the same credits and the balance never goes
    below zero. An empty update result means another writer got there
    first; the ledger re-reads and tries again.
    """

    def __init__(self, db=None):
        self.db = db or async_supabase_client

    async def get_balance(self, user_id: str) -> int:
        try:
            response = await self.db.table_select(USERS_TABLE, "credits", eq={"id": user_id})
        except Exception as e:
            logger.error(f"Error reading credits for {user_id}: {str(e)}")
            raise PersistenceFailure("Unable to read your aiam balance.", detail=str(e))

        rows = extract_data(response)
        if not rows:
            raise PersistenceFailure("User profile not found.", detail=f"missing user {user_id}")
        return int(rows[0].get("credits") or 0)

    async def _swap(self, user_id: str, current: int, new_balance: int) -> bool:
        try:
            response = await self.db.table_update(USERS_TABLE, {
                "credits": new_balance,
                "updated_at": utc_now(),
            }, eq={"id": user_id, "credits": current})
        except Exception as e:
            logger.error(f"Error writing credits for {user_id}: {str(e)}")
            raise PersistenceFailure("Unable to update your aiam balance.", detail=str(e))

        error = extract_error(response)
        if error:
            logger.error(f"Credit update rejected for {user_id}: {error}")
            raise PersistenceFailure("Unable to update your aiam balance.", detail=str(error))

        return bool(extract_data(response))

    async def reserve_and_debit(self, user_id: str, cost: int) -> int:
        """Take ``cost`` credits from the user, returning the new balance.

        Raises InsufficientCredits when the balance does not cover the cost
        and PersistenceFailure when the write cannot be made. Callers must
        not start billable work after either.
        """
        if cost <= 0:
            return await self.get_balance(user_id)

        for attempt in range(MAX_DEBIT_ATTEMPTS):
            current = await self.get_balance(user_id)
            if current < cost:
                raise InsufficientCredits(required=cost, available=current)

            if await self._swap(user_id, current, current - cost):
                await profile_cache.delete(profile_cache_key(user_id))
                logger.info(f"Debited {cost} credits from {user_id}: {current} -> {current - cost}")
                return current - cost

            logger.info(f"Concurrent credit update for {user_id}, retrying debit (attempt {attempt + 1})")

        raise PersistenceFailure(
            "Your aiam balance is being updated elsewhere. Please try again.",
            detail=f"debit contention after {MAX_DEBIT_ATTEMPTS} attempts",
        )

    async def refund(self, user_id: str, amount: int) -> int:
        """Give back credits for work that did not deliver"""
        if amount <= 0:
            return await self.get_balance(user_id)

        try:
            for _ in range(MAX_DEBIT_ATTEMPTS):
                current = await self.get_balance(user_id)
                if await self._swap(user_id, current, current + amount):
                    await profile_cache.delete(profile_cache_key(user_id))
                    logger.info(f"Refunded {amount} credits to {user_id}: {current} -> {current + amount}")
                    return current + amount
        except PersistenceFailure:
            logger.error(f"REFUND FAILED: user={user_id} amount={amount}; balance needs manual reconciliation")
            raise

        logger.error(f"REFUND FAILED: user={user_id} amount={amount}; contention, balance needs manual reconciliation")
        raise PersistenceFailure(
            "We could not return your aiams automatically. Support has been notified.",
            detail=f"refund contention after {MAX_DEBIT_ATTEMPTS} attempts",
        )


credit_ledger = CreditLedger()
