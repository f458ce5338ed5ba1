"""Races on the same refresh token or email are settled by the store."""

import asyncio

from tokenkeeper.service.errors import DuplicateEmailError, InvalidCredentialsError

PASSWORD = "TestPassword123!"


class TestConcurrentRefresh:
    async def test_exactly_one_concurrent_refresh_wins(self, manager, store):
        registered = await manager.register("race@example.com", PASSWORD)
        token = registered.refresh_token

        results = await asyncio.gather(
            *(manager.refresh(token) for _ in range(50)), return_exceptions=True
        )

        winners = [r for r in results if not isinstance(r, BaseException)]
        losers = [r for r in results if isinstance(r, BaseException)]
        assert len(winners) == 1
        assert len(losers) == 49
        assert all(isinstance(exc, InvalidCredentialsError) for exc in losers)

        # Only the winner's value remains usable
        assert len(store.refresh_tokens) == 1
        assert store.find_refresh_token(winners[0].refresh_token) is not None

    async def test_logout_racing_refresh_leaves_no_usable_token(self, manager, store):
        registered = await manager.register("logout-race@example.com", PASSWORD)
        token = registered.refresh_token

        results = await asyncio.gather(
            manager.refresh(token), manager.logout(token), return_exceptions=True
        )

        refreshed = results[0]
        if isinstance(refreshed, BaseException):
            assert isinstance(refreshed, InvalidCredentialsError)
            assert store.refresh_tokens == {}
        else:
            # Rotation beat the logout; the old value is still dead
            assert store.find_refresh_token(token) is None
            assert store.find_refresh_token(refreshed.refresh_token) is not None

    async def test_refresh_after_logout_all_fails(self, manager):
        registered = await manager.register("all@example.com", PASSWORD)
        await manager.logout_all(registered.account.id)
        results = await asyncio.gather(
            *(manager.refresh(registered.refresh_token) for _ in range(5)),
            return_exceptions=True,
        )
        assert all(isinstance(r, InvalidCredentialsError) for r in results)


class TestConcurrentRegistration:
    async def test_only_one_account_per_email(self, manager, store):
        emails = ["dup@example.com", "DUP@example.com", "Dup@Example.com"] * 4

        results = await asyncio.gather(
            *(manager.register(email, PASSWORD) for email in emails),
            return_exceptions=True,
        )

        created = [r for r in results if not isinstance(r, BaseException)]
        failed = [r for r in results if isinstance(r, BaseException)]
        assert len(created) == 1
        assert all(isinstance(exc, DuplicateEmailError) for exc in failed)
        assert len(store.accounts) == 1
        assert store.find_account_by_email("dup@example.com").id == created[0].account.id
