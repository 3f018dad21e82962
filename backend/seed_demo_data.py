"""
Demo Seed Data Script

Creates a small demo organisation through the services:
- root SuperAdmin (reserved root id)
- two Managers, each managing one group
- one Operator per group
- six TikTok accounts with 30 days of synthetic snapshots

Then prints the SuperAdmin dashboard.
"""

import random
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy.orm import Session

from tiktok_accounts.config import get_settings
from tiktok_accounts.database import SessionLocal, init_db
from tiktok_accounts.logging_config import configure_logging
from tiktok_accounts.models import AnalyticsSnapshot, DecisionTrace, Group, IdempotencyKey, TikTokAccount, User
from tiktok_accounts.models.user import Role
from tiktok_accounts.orchestrators.analytics_orchestrator import AnalyticsOrchestrator
from tiktok_accounts.services.account_service import AccountService
from tiktok_accounts.services.group_service import GroupService
from tiktok_accounts.services.metric_source import MetricSample
from tiktok_accounts.services.snapshot_ingestion_service import SnapshotIngestionService
from tiktok_accounts.services.user_service import UserService


HISTORY_DAYS = 30

DEMO_GROUPS = {
    "Food & Travel": ["street_eats_daily", "wander_bites", "noodle_nomad"],
    "Fitness": ["lift_with_lena", "morning_mobility", "run_club_hq"],
}


def clear_all_data(db: Session):
    """Clear all existing data (for demo purposes only)"""
    print("Clearing existing data...")
    db.query(AnalyticsSnapshot).delete()
    db.query(TikTokAccount).delete()
    db.query(DecisionTrace).delete()
    db.query(IdempotencyKey).delete()
    db.query(User).filter(User.role == Role.OPERATOR).delete()
    db.query(Group).delete()
    db.query(User).delete()
    db.commit()
    print("✓ Data cleared")


def create_root(db: Session) -> User:
    """Bootstrap the root SuperAdmin; every other record is created through the services."""
    root = User(
        id=get_settings().root_superadmin_id,
        username="root",
        hashed_password="demo-not-a-real-hash",
        role=Role.SUPER_ADMIN,
        is_active=True,
    )
    db.add(root)
    db.commit()
    print("✓ Root SuperAdmin created")
    return root


def create_organisation(db: Session, root: User):
    """Managers, groups, operators and accounts."""
    users = UserService(db)
    groups = GroupService(db)
    accounts = AccountService(db)

    created = []
    for index, (group_name, handles) in enumerate(DEMO_GROUPS.items(), start=1):
        manager = users.create_user(root, f"manager{index}", "demo-not-a-real-hash", Role.MANAGER)
        group = groups.create_group(root, group_name, description=f"Demo group {index}", managed_by=manager.id)
        users.create_user(manager, f"operator{index}", "demo-not-a-real-hash", Role.OPERATOR, group_id=group.id)

        for handle in handles:
            created.append(accounts.create_account(
                manager,
                handle,
                group.id,
                responsible_person=f"operator{index}",
                tags=[group_name.lower()],
            ))
        print(f"✓ Group '{group_name}' with {len(handles)} accounts (manager{index}, operator{index})")
    return created


def create_history(db: Session, accounts, today: date):
    """Synthetic daily samples, ingested exactly as a refresh would."""
    ingestion = SnapshotIngestionService(db)
    rng = random.Random(42)

    for account in accounts:
        followers = rng.randint(5_000, 150_000)
        likes = followers * rng.randint(8, 20)
        videos = rng.randint(20, 300)
        for offset in range(HISTORY_DAYS - 1, -1, -1):
            day = today - timedelta(days=offset)
            followers += rng.randint(-50, 400)
            likes += rng.randint(0, 5_000)
            videos += rng.choice([0, 0, 1, 1, 2])
            ingestion.ingest(account, MetricSample(
                account_name=account.account_name,
                follower_count=max(followers, 0),
                following_count=rng.randint(50, 500),
                total_likes=likes,
                video_count=videos,
                nickname=account.account_name.replace("_", " ").title(),
                captured_at=datetime.combine(day, time(6, 0), tzinfo=timezone.utc),
            ))
    print(f"✓ {HISTORY_DAYS} days of snapshots for {len(accounts)} accounts")


def main():
    """Run the complete demo data seeding"""
    print("="*60)
    print("TikTok Account System - Demo Data Seeder")
    print("="*60)

    configure_logging("WARNING")
    init_db()
    db = SessionLocal()

    try:
        clear_all_data(db)

        root = create_root(db)
        accounts = create_organisation(db, root)
        today = datetime.now(timezone.utc).date()
        create_history(db, accounts, today)

        dashboard = AnalyticsOrchestrator(db).dashboard(root, as_of=today)

        print("\n" + "="*60)
        print("✓ Demo data successfully seeded!")
        print("="*60)
        print(f"\nTotal followers: {dashboard.total_followers:,}")
        for rollup in dashboard.groups:
            print(
                f"  - {rollup.group_name}: {rollup.account_count} accounts, "
                f"{rollup.total_followers:,} followers, "
                f"{dashboard.growth_days}-day growth "
                f"{rollup.growth_rate:.2%}"
            )
        print("\nTop accounts:")
        for entry in dashboard.top_accounts:
            print(f"  {entry.rank}. @{entry.account_name} ({entry.follower_count:,} followers)")
        print("="*60)

    except Exception as e:
        print(f"\n❌ Error seeding data: {e}")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == '__main__':
    main()
