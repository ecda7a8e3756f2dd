"""
Retention cleanup: removes expired guests, quiz attempts, unpaid-user emails
and password reset tokens.

    python -m quizstore.cleanup
"""
import asyncio
import logging
from typing import Dict

from quizstore import logging_config
from quizstore.client import Client
from quizstore.models import utcnow

logger = logging.getLogger("quizstore.cleanup")


async def cleanup_expired_temporary_users(client: Client) -> int:
    # Guests that paid keep their rows: payments restrict user deletion
    result = await client.user.delete_many(where={
        "is_temporary": True,
        "expires_at": {"lt": utcnow()},
        "payments": {"none": {}},
    })
    return result["count"]


async def cleanup_expired_quiz_attempts(client: Client) -> int:
    result = await client.quiz_attempt.delete_many(where={"expires_at": {"lt": utcnow()}})
    return result["count"]


async def cleanup_expired_unpaid_emails(client: Client) -> int:
    result = await client.unpaid_user_email.delete_many(where={"expires_at": {"lt": utcnow()}})
    return result["count"]


async def cleanup_expired_reset_tokens(client: Client) -> int:
    result = await client.password_reset_token.delete_many(where={"expires_at": {"lt": utcnow()}})
    return result["count"]


async def run_cleanup(client: Client) -> Dict[str, int]:
    counts = {
        "temporary_users": await cleanup_expired_temporary_users(client),
        "quiz_attempts": await cleanup_expired_quiz_attempts(client),
        "unpaid_user_emails": await cleanup_expired_unpaid_emails(client),
        "password_reset_tokens": await cleanup_expired_reset_tokens(client),
    }
    for name, count in counts.items():
        logger.info("Cleaned up %s expired %s", count, name)
    return counts


async def main():
    async with Client() as client:
        return await run_cleanup(client)


if __name__ == "__main__":
    logging_config.configure_logging()
    asyncio.run(main())
