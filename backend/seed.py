#!/usr/bin/env python3
"""
ITSM — Development Data Seeder
Creates one account per role plus a spread of change requests across every
status, so a fresh database has something to review.

Usage:
    python backend/seed.py
    python backend/seed.py --changes 40 --password 'DevPassword123!'
    python backend/seed.py --reset

Existing accounts (matched by email) are left untouched.
"""

import argparse
import asyncio
import logging
import random
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthService
from models import (
    Base, User, UserRole, ChangeRequest, ChangeStatus, ChangeImpact, ChangeCategory,
    ReviewStatus, Setting, SETTINGS_ID, utcnow,
)

logger = logging.getLogger("itsm.seed")

SEED_DOMAIN = "itsm-demo.com"
DEFAULT_PASSWORD = "ChangeMe123!"

SEED_USERS = [
    ("Enterprise Admin", "enterprise", UserRole.ENTERPRISE_ADMIN),
    ("Site Admin", "admin", UserRole.ADMIN),
    ("Service Desk", "staff", UserRole.STAFF),
    ("Knowledge Editor", "editor", UserRole.EDITOR),
    ("Regular User", "user", UserRole.USER),
]

CHANGE_TITLES = [
    "Patch hypervisor cluster", "Rotate TLS certificates", "Upgrade core switch firmware",
    "Migrate file shares to NAS", "Enable MFA for VPN", "Decommission legacy CRM",
    "Expand SAN capacity", "Roll out endpoint agent", "Replace UPS batteries",
    "Update firewall rule base", "Move DNS to new resolvers", "Reindex search cluster",
]


async def seed_users(db: AsyncSession, password: str) -> dict:
    """Return {role: User}, creating any seed account that is missing."""
    password_hash = AuthService.hash_password(password)
    users = {}
    for name, local_part, role in SEED_USERS:
        email = f"{local_part}@{SEED_DOMAIN}"
        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()
        if not user:
            user = User(name=name, email=email, password_hash=password_hash, role=role, is_active=True)
            db.add(user)
        users[role] = user
    await db.flush()
    return users


def _reviewers_for(status: str, reviewers, now) -> list:
    if status in (ChangeStatus.DRAFT.value, ChangeStatus.SUBMITTED.value):
        return []
    vote = {
        ChangeStatus.APPROVED.value: ReviewStatus.APPROVED.value,
        ChangeStatus.IMPLEMENTED.value: ReviewStatus.APPROVED.value,
        ChangeStatus.CLOSED.value: ReviewStatus.APPROVED.value,
        ChangeStatus.REJECTED.value: ReviewStatus.REJECTED.value,
    }.get(status, ReviewStatus.PENDING.value)
    return [
        {
            "user": u.id,
            "status": vote,
            "comments": None if vote == ReviewStatus.PENDING.value else f"Seeded {vote} vote",
            "reviewed_at": now.isoformat(),
        }
        for u in reviewers
    ]


async def seed_changes(db: AsyncSession, users: dict, count: int, rng: random.Random) -> list:
    owners = [users[UserRole.USER], users[UserRole.EDITOR], users[UserRole.STAFF]]
    reviewers = [users[UserRole.STAFF], users[UserRole.ADMIN]]
    statuses = [s.value for s in ChangeStatus]
    now = utcnow()

    changes = []
    for i in range(count):
        status = statuses[i % len(statuses)]
        start = now + timedelta(days=rng.randint(-30, 30), hours=rng.randint(0, 23))
        change = ChangeRequest(
            title=f"{rng.choice(CHANGE_TITLES)} #{i + 1}",
            description="Seeded change request for local development.",
            impact=rng.choice([x.value for x in ChangeImpact]),
            category=rng.choice([x.value for x in ChangeCategory]),
            status=status,
            planned_start_date=start,
            planned_end_date=start + timedelta(hours=rng.randint(1, 8)),
            assigned_to=users[UserRole.STAFF].id if status != ChangeStatus.DRAFT.value else None,
            reviewers=_reviewers_for(status, reviewers, now),
            user_id=rng.choice(owners).id,
        )
        db.add(change)
        changes.append(change)
    await db.flush()
    return changes


async def seed_settings(db: AsyncSession) -> Setting:
    result = await db.execute(select(Setting).where(Setting.id == SETTINGS_ID))
    settings = result.scalar_one_or_none()
    if not settings:
        settings = Setting(id=SETTINGS_ID)
        db.add(settings)
        await db.flush()
    return settings


async def seed(db: AsyncSession, changes: int = 20, password: str = DEFAULT_PASSWORD, seed_value: int = 42) -> dict:
    """Populate users, settings and change requests; caller commits."""
    rng = random.Random(seed_value)
    users = await seed_users(db, password)
    await seed_settings(db)
    created = await seed_changes(db, users, changes, rng)
    return {"users": len(users), "changes": len(created)}


# ── CLI ─────────────────────────────────────────────────────

async def _run(args) -> dict:
    from database import engine, get_db_context, init_db

    if args.reset:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await init_db()
    async with get_db_context() as db:
        counts = await seed(db, changes=args.changes, password=args.password, seed_value=args.seed)
    await engine.dispose()
    return counts


def main():
    parser = argparse.ArgumentParser(description="ITSM development data seeder")
    parser.add_argument("--changes", type=int, default=20, help="Number of change requests")
    parser.add_argument("--password", type=str, default=DEFAULT_PASSWORD, help="Password for seeded accounts")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--reset", action="store_true", help="Drop and recreate all tables first")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s %(message)s")
    counts = asyncio.run(_run(args))
    logger.info(f"Seeded {counts['users']} users and {counts['changes']} change requests")
    for _, local_part, role in SEED_USERS:
        logger.info(f"  {role.value:<17} {local_part}@{SEED_DOMAIN}")


if __name__ == "__main__":
    main()
