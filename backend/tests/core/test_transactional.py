"""Tests for the transactional unit-of-work decorator."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from clinic_saas.core.database import TX_DEPTH_KEY, transactional
from clinic_saas.core.errors import (
    ConflictError,
    InternalError,
    NotFoundError,
    Result,
)


class FakeSession:
    def __init__(self):
        self.info = {}
        self.commit = AsyncMock()
        self.rollback = AsyncMock()


class Ledger:
    def __init__(self, session):
        self.session = session
        self.calls = []

    @transactional
    async def succeed(self, value):
        self.calls.append(("succeed", self.session.info[TX_DEPTH_KEY]))
        return Result.success(value)

    @transactional
    async def reject(self):
        return Result.failure(NotFoundError("Nothing here"))

    @transactional
    async def raise_service_error(self):
        raise ConflictError("Already exists")

    @transactional
    async def store_failure(self):
        raise OperationalError("UPDATE invoices", {}, Exception("database is locked"))

    @transactional
    async def outer(self, fail_inner: bool):
        inner = await (self.reject() if fail_inner else self.succeed("inner"))
        if not inner.ok:
            return inner
        return Result.success("outer")

    @transactional
    async def plain_value(self):
        return 42


class TestTransactional:
    """Only the outermost call commits or rolls back."""

    @pytest.mark.asyncio
    async def test_success_commits(self):
        session = FakeSession()

        result = await Ledger(session).succeed("ok")

        assert result.value == "ok"
        session.commit.assert_awaited_once()
        session.rollback.assert_not_awaited()
        assert session.info[TX_DEPTH_KEY] == 0

    @pytest.mark.asyncio
    async def test_failed_result_rolls_back(self):
        session = FakeSession()

        result = await Ledger(session).reject()

        assert isinstance(result.error, NotFoundError)
        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_service_error_rolls_back_and_propagates(self):
        session = FakeSession()

        with pytest.raises(ConflictError):
            await Ledger(session).raise_service_error()

        session.rollback.assert_awaited_once()
        assert session.info[TX_DEPTH_KEY] == 0

    @pytest.mark.asyncio
    async def test_store_failure_becomes_internal_error(self):
        session = FakeSession()

        with pytest.raises(InternalError) as exc_info:
            await Ledger(session).store_failure()

        assert exc_info.value.status_code == 500
        assert exc_info.value.details["operation"].endswith("store_failure")
        assert isinstance(exc_info.value.__cause__, OperationalError)
        session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_nested_calls_join_outer(self):
        session = FakeSession()
        ledger = Ledger(session)

        result = await ledger.outer(fail_inner=False)

        assert result.value == "outer"
        assert ledger.calls == [("succeed", 2)]
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_nested_failure_rolls_back_once(self):
        session = FakeSession()

        result = await Ledger(session).outer(fail_inner=True)

        assert not result.ok
        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_result_values_commit(self):
        session = FakeSession()

        assert await Ledger(session).plain_value() == 42
        session.commit.assert_awaited_once()


class TestResult:
    def test_unwrap(self):
        assert Result.success(3).unwrap() == 3
        with pytest.raises(NotFoundError):
            Result.failure(NotFoundError("missing")).unwrap()

    def test_error_body(self):
        error = ConflictError("Plan slug already exists", {"slug": "basic"})

        assert error.to_dict() == {
            "error": "conflict",
            "message": "Plan slug already exists",
            "details": {"slug": "basic"},
        }
