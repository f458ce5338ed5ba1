from datetime import timedelta

from scripts.bootstrap_account import bootstrap_account
from scripts.purge_expired_tokens import purge_expired_tokens
from tokenkeeper.service.runtime import get_runtime
from tokenkeeper.storage.models import utcnow


async def test_bootstrap_creates_then_reports_existing():
    created = await bootstrap_account("ops@example.com", "correct-horse", first_name="Ops")
    assert created["status"] == "created"
    assert created["access_token"]

    again = await bootstrap_account("OPS@example.com", "correct-horse")
    assert again["status"] == "exists"
    assert again["account_id"] == created["account_id"]


async def test_bootstrap_dry_run_writes_nothing():
    result = await bootstrap_account("dry@example.com", "correct-horse", dry_run=True)
    assert result["status"] == "dry_run"
    assert get_runtime().store.find_account_by_email("dry@example.com") is None


async def test_purge_script_removes_expired_tokens():
    store = get_runtime().store
    account = store.create_account("purge-script@example.com", "hash")
    store.create_refresh_token(account.id, "stale", utcnow() - timedelta(minutes=1))
    store.create_refresh_token(account.id, "fresh", utcnow() + timedelta(days=1))

    assert await purge_expired_tokens() == 1
    assert store.find_refresh_token("fresh") is not None
