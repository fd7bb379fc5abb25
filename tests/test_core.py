"""LeadZap – Core Tests.

Tests: bearer tokens, credential encryption, cancellation token,
background supervisor, message status lifecycle.
"""

import asyncio

import pytest
from fastapi import HTTPException

from app.core.auth import create_access_token, decode_access_token
from app.core.background import BackgroundSupervisor
from app.core.cancellation import CancellationToken, OperationCancelledError
from app.core.crypto import ENCRYPTION_PREFIX, decrypt_value, encrypt_value
from app.gateway.persistence import MessageStore


class TestAccessTokens:
    def test_roundtrip(self) -> None:
        token = create_access_token(user_id="u1", email="a@b.test")
        payload = decode_access_token(token)
        assert payload["sub"] == "u1"
        assert payload["email"] == "a@b.test"

    def test_tampered_signature(self) -> None:
        token = create_access_token(user_id="u1", email="a@b.test")
        with pytest.raises(HTTPException) as exc:
            decode_access_token(token[:-2] + "xx")
        assert exc.value.status_code == 401

    def test_expired(self) -> None:
        token = create_access_token(user_id="u1", email="a@b.test", ttl_seconds=-1)
        with pytest.raises(HTTPException):
            decode_access_token(token)

    def test_garbage(self) -> None:
        with pytest.raises(HTTPException):
            decode_access_token("not-a-token")


class TestCrypto:
    def test_encrypt_adds_prefix(self) -> None:
        stored = encrypt_value("EAAG-secret")
        assert stored.startswith(ENCRYPTION_PREFIX)
        assert "EAAG-secret" not in stored
        assert decrypt_value(stored) == "EAAG-secret"

    def test_encrypt_is_idempotent(self) -> None:
        stored = encrypt_value("EAAG-secret")
        assert encrypt_value(stored) == stored

    def test_plain_values_pass_through(self) -> None:
        assert decrypt_value("legacy-plain") == "legacy-plain"
        assert decrypt_value(None) == ""

    def test_corrupted_value_reads_as_missing(self) -> None:
        assert decrypt_value(ENCRYPTION_PREFIX + "garbage") == ""


class TestCancellationToken:
    def test_cancel_is_idempotent(self) -> None:
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    def test_raise_if_cancelled(self) -> None:
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            token.raise_if_cancelled()

    @pytest.mark.anyio
    async def test_run_returns_result(self) -> None:
        async def work() -> int:
            return 42

        assert await CancellationToken().run(work()) == 42

    @pytest.mark.anyio
    async def test_run_aborts_pending_work(self) -> None:
        token = CancellationToken()
        aborted = asyncio.Event()

        async def work() -> None:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                aborted.set()
                raise

        async def cancel_soon() -> None:
            await asyncio.sleep(0.01)
            token.cancel("user")

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(OperationCancelledError):
            await token.run(work())
        await canceller
        assert aborted.is_set()

    @pytest.mark.anyio
    async def test_run_propagates_errors(self) -> None:
        async def work() -> None:
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await CancellationToken().run(work())


class TestBackgroundSupervisor:
    @pytest.mark.anyio
    async def test_failures_are_contained(self) -> None:
        supervisor = BackgroundSupervisor()

        async def explode() -> None:
            raise RuntimeError("provider down")

        task = supervisor.spawn(explode(), name="explode")
        await supervisor.join()
        assert task.done()
        assert task.exception() is None
        assert supervisor.active_count == 0

    @pytest.mark.anyio
    async def test_spawn_returns_immediately(self) -> None:
        supervisor = BackgroundSupervisor()
        gate = asyncio.Event()
        supervisor.spawn(gate.wait(), name="gate")
        assert supervisor.active_count == 1
        gate.set()
        await supervisor.join()
        assert supervisor.active_count == 0

    @pytest.mark.anyio
    async def test_drain_cancels_stragglers(self) -> None:
        supervisor = BackgroundSupervisor()
        finished = asyncio.Event()

        async def quick() -> None:
            finished.set()

        supervisor.spawn(quick(), name="quick")
        straggler = supervisor.spawn(asyncio.Event().wait(), name="straggler")
        await supervisor.drain(timeout=0.05)

        assert finished.is_set()
        assert straggler.cancelled()
        with pytest.raises(RuntimeError):
            supervisor.spawn(quick(), name="late")

    @pytest.mark.anyio
    async def test_reopen_after_drain(self) -> None:
        supervisor = BackgroundSupervisor()
        await supervisor.drain(timeout=0.01)
        supervisor.reopen()
        gate = asyncio.Event()
        gate.set()
        supervisor.spawn(gate.wait(), name="again")
        await supervisor.join()


class TestStatusLifecycle:
    @pytest.fixture
    def store(self):
        return MessageStore()

    def _message(self, store, company, status: str):
        return store.create_message(
            company_id=company.id, contact_id=None, content="Oi", message_type="text", status=status
        )

    def test_pending_to_sent(self, store, company) -> None:
        msg = self._message(store, company, "pending")
        assert store.update_status(msg.id, "sent", provider_message_id="wamid.1") is True
        saved = store.get_message(msg.id)
        assert saved.status == "sent"
        assert saved.message_id == "wamid.1"
        assert saved.sent_at is not None

    @pytest.mark.parametrize("status", ["pending", "processing"])
    def test_unsent_records_have_no_send_time(self, store, company, status) -> None:
        msg = self._message(store, company, status)
        assert store.get_message(msg.id).sent_at is None
        store.update_status(msg.id, "failed", error="boom")
        assert store.get_message(msg.id).sent_at is None

    def test_processing_reassert(self, store, company) -> None:
        msg = self._message(store, company, "processing")
        assert store.update_status(msg.id, "processing") is True

    @pytest.mark.parametrize("terminal", ["sent", "failed"])
    @pytest.mark.parametrize("target", ["pending", "processing", "sent", "failed"])
    def test_terminal_states_have_no_exits(self, store, company, terminal, target) -> None:
        msg = self._message(store, company, "processing")
        assert store.update_status(msg.id, terminal)
        assert store.update_status(msg.id, target) is False
        assert store.get_message(msg.id).status == terminal

    def test_unknown_message(self, store) -> None:
        assert store.update_status("missing", "sent") is False

    def test_get_or_create_contact_normalizes(self, store, company) -> None:
        first = store.get_or_create_contact(company.id, "83 99999-0001")
        second = store.get_or_create_contact(company.id, "5583999990001@s.whatsapp.net")
        assert first.id == second.id
        assert first.normalized_phone == "5583999990001"
