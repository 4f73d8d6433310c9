"""Bridge operations: linking, unlinking, owner removal, viewing."""

import asyncio

import pytest

from vanishbridge.bridge import Bridge, normalize_account
from vanishbridge.config import BridgeSettings, StorageSettings
from vanishbridge.errors import AuthorizationError, NotFoundError
from vanishbridge.protocol.base import ProtocolEvent
from vanishbridge.sessions import SessionState
from vanishbridge.store import PayloadKind

A1 = "+15550000001"


@pytest.fixture
def bridge(link_store, manager):
    return Bridge(link_store, manager, manager.interceptor)


class TestNormalizeAccount:

    def test_strips_formatting(self):
        assert normalize_account("+1 (555) 000-0001") == A1
        assert normalize_account("15550000001") == "15550000001"

    def test_rejects_garbage(self):
        for raw in ("", "hello", "+12", "+1234567890123456789"):
            with pytest.raises(ValueError):
                normalize_account(raw)


class TestLinking:

    def test_unverified_owner_refused(self, bridge):
        reply = asyncio.run(bridge.link_account("U1", A1))
        assert "not authorized" in reply

    def test_bad_number(self, bridge, verify_owner):
        verify_owner("U1")
        reply = asyncio.run(bridge.link_account("U1", "call me"))
        assert "doesn't look like a phone number" in reply

    def test_link_flow(self, bridge, protocol, link_store, verify_owner):
        verify_owner("U1")

        async def scenario():
            first = await bridge.link_account("U1", A1)
            await protocol.settle()
            again = await bridge.link_account("U1", A1)
            await protocol.pair("U1", A1)
            done = await bridge.link_account("U1", A1)
            return first, again, done

        first, again, done = asyncio.run(scenario())
        assert first.startswith("⏳ Linking")
        assert "already waiting for pairing" in again
        assert "already linked" in done
        assert link_store.list_linked("U1") == [A1]

    def test_pairings_in_progress_count_towards_cap(self, bridge, protocol, verify_owner):
        verify_owner("U1")

        async def scenario():
            replies = []
            for i in range(4):
                replies.append(await bridge.link_account("U1", f"+1555000000{i}"))
            await protocol.settle()
            return replies

        replies = asyncio.run(scenario())
        assert all(r.startswith("⏳") for r in replies[:3])
        assert "maximum of 3" in replies[3]
        assert len(protocol.connections) == 3

    def test_recovered_pairings_are_not_counted_twice(self, bridge, protocol, link_store, verify_owner):
        verify_owner("U1")
        link_store.link_account("U1", "+15550000001")
        link_store.link_account("U1", "+15550000002")

        async def scenario():
            await bridge.start()
            await protocol.settle()
            pending = bridge.manager.pending_count("U1")
            third = await bridge.link_account("U1", "+15550000003")
            fourth = await bridge.link_account("U1", "+15550000004")
            return pending, third, fourth

        pending, third, fourth = asyncio.run(scenario())
        assert pending == 0
        assert third.startswith("⏳ Linking")
        assert "maximum of 3" in fourth

    def test_account_taken_by_other_owner(self, bridge, protocol, verify_owner):
        verify_owner("U1")
        verify_owner("U2")

        async def scenario():
            await bridge.link_account("U1", A1)
            await protocol.settle()
            return await bridge.link_account("U2", A1)

        assert "someone else" in asyncio.run(scenario())

    def test_connect_failure_reported(self, bridge, protocol, verify_owner):
        verify_owner("U1")
        protocol.fail_for.add(A1)
        reply = asyncio.run(bridge.link_account("U1", A1))
        assert "Could not start a session" in reply


class TestUnlinking:

    def test_unlink_live_session(self, bridge, protocol, link_store, verify_owner):
        verify_owner("U1")

        async def scenario():
            await bridge.link_account("U1", A1)
            await protocol.settle()
            conn = await protocol.pair("U1", A1)
            reply = await bridge.unlink_account("U1", A1)
            return reply, conn

        reply, conn = asyncio.run(scenario())
        assert "unlinked" in reply
        assert conn.logged_out
        assert link_store.list_linked("U1") == []

    def test_unlink_stale_record(self, bridge, link_store, archive, verify_owner):
        verify_owner("U1")
        link_store.link_account("U1", A1)
        archive.save("U1", A1, PayloadKind.TEXT, "left over")

        reply = asyncio.run(bridge.unlink_account("U1", A1))
        assert "unlinked" in reply
        assert link_store.list_linked("U1") == []
        assert archive.list("U1", A1) == []

    def test_unlink_unknown(self, bridge, verify_owner):
        verify_owner("U1")
        assert "is not linked" in asyncio.run(bridge.unlink_account("U1", A1))

    def test_revoke_owner(self, bridge, protocol, link_store, verify_owner):
        verify_owner("U1")
        link_store.link_account("U1", "+15550000009")

        async def scenario():
            await bridge.link_account("U1", A1)
            await protocol.settle()
            await protocol.pair("U1", A1)
            return await bridge.revoke_owner("U1")

        removed = asyncio.run(scenario())
        assert removed == sorted([A1, "+15550000009"])
        assert not link_store.is_verified("U1")
        assert bridge.manager.registry.for_owner("U1") == []

    def test_revoke_owner_when_logout_fails(self, bridge, protocol, link_store, archive, verify_owner):
        verify_owner("U1")

        async def scenario():
            await bridge.link_account("U1", A1)
            await protocol.settle()
            conn = await protocol.pair("U1", A1)
            handle = bridge.manager.registry.get("U1", A1)
            conn.fail_logout = True
            removed = await bridge.revoke_owner("U1")
            await conn.send_self_message("m2", "after revoke")
            return removed, handle, conn

        removed, handle, conn = asyncio.run(scenario())
        assert removed == [A1]
        assert handle.state == SessionState.CLOSED
        assert handle.close_reason == "owner_revoked"
        assert conn.closed
        assert conn.revoked == []
        assert archive.list("U1", A1) == []
        assert bridge.manager.registry.for_owner("U1") == []
        assert link_store.owner_of(A1) is None

    def test_revoke_unknown_owner(self, bridge):
        with pytest.raises(NotFoundError):
            asyncio.run(bridge.revoke_owner("nobody"))


class TestViewing:

    def test_list_artifacts_requires_verification(self, bridge):
        with pytest.raises(AuthorizationError):
            bridge.list_artifacts("U1", A1)

    def test_list_artifacts(self, bridge, archive, verify_owner):
        verify_owner("U1")
        bridge.link_store.link_account("U1", A1)
        archive.save("U1", A1, PayloadKind.TEXT, "one", timestamp=1.0)
        archive.save("U1", A1, PayloadKind.TEXT, "two", timestamp=2.0)
        assert [a.read_text() for a in bridge.list_artifacts("U1", A1)] == ["one", "two"]

    def test_list_artifacts_of_unlinked_account(self, bridge, verify_owner):
        verify_owner("U1")
        assert bridge.list_artifacts("U1", A1) == []

    def test_disconnect_empties_the_listing(self, bridge, protocol, link_store, verify_owner):
        verify_owner("U1")

        async def scenario():
            await bridge.link_account("U1", A1)
            await protocol.settle()
            conn = await protocol.pair("U1", A1)
            await conn.send_self_message("m1", "hi")
            before = bridge.list_artifacts("U1", A1)
            await conn.emit(ProtocolEvent.closed("connection_lost"))
            return before

        before = asyncio.run(scenario())
        assert [a.read_text() for a in before] == ["hi"]
        assert bridge.list_artifacts("U1", A1) == []
        assert link_store.list_linked("U1") == []

    def test_session_status(self, bridge, protocol, verify_owner):
        verify_owner("U1")

        async def scenario():
            await bridge.link_account("U1", A1)
            await protocol.settle()

        asyncio.run(scenario())
        status = bridge.session_status("U1")
        assert status[0]["account"] == A1
        assert status[0]["state"] == SessionState.AWAITING_PAIRING.value


class TestFromSettings:

    def test_builds_and_recovers(self, tmp_path, protocol, controller):
        settings = BridgeSettings(storage=StorageSettings(
            data_dir=str(tmp_path / "data"),
            archive_dir=str(tmp_path / "archive"),
            credentials_dir=str(tmp_path / "creds"),
        ))
        bridge = Bridge.from_settings(settings, protocol, controller)

        assert bridge.link_store.path == tmp_path / "data" / "users.json"
        assert bridge.link_store.max_linked_per_owner == 3

        async def scenario():
            report = await bridge.start()
            await bridge.stop()
            return report

        report = asyncio.run(scenario())
        assert report.total == 0
        assert protocol.closed
