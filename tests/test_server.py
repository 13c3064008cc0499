import threading
from unittest.mock import MagicMock

import pytest

from authenticator import SoftwareAuthenticator
from config import RelyingPartyConfig
from conftest import APP_ID, FACET_ID
from errors import ErrorKind, SignerFailure
from server import FidoServer


class TestCeremonies:
    def test_register_then_authenticate(self, server, token):
        assert server.register("alice", token).ok
        assert server.authenticate("alice", token).ok
        assert server.authenticate("alice", token).ok
        assert token.sign_counter == 2
        assert len(server.pending) == 0

    def test_two_step_flow(self, server, token):
        request = server.register_request("alice")
        assert server.register_finish("alice", token.register(request)).ok

        auth = server.authenticate_request("alice")
        assert auth.ok
        assert auth.value.key_handle == server.registry.lookup_credential_handle("alice").value
        assert server.authenticate_finish("alice", token.authenticate(auth.value)).ok

    def test_authenticate_unknown_identity_never_reaches_signer(self, server):
        signer = MagicMock()
        result = server.authenticate("bob", signer)
        assert result.error is ErrorKind.UNKNOWN_IDENTITY
        signer.authenticate.assert_not_called()
        assert server.debug_dump() == {}

    def test_authenticate_request_for_unknown_identity(self, server):
        assert server.authenticate_request("bob").error is ErrorKind.UNKNOWN_IDENTITY
        assert len(server.pending) == 0

    def test_reregistration_replaces_key(self, server, token):
        server.register("alice", token)
        first = server.registry.lookup_credential_handle("alice").value
        server.register("alice", token)
        second = server.registry.lookup_credential_handle("alice").value
        assert first != second
        assert server.authenticate("alice", token).ok

    def test_replayed_login_response_rejected(self, server, token):
        server.register("alice", token)
        request = server.authenticate_request("alice").value
        response = token.authenticate(request)
        assert server.authenticate_finish("alice", response).ok
        assert server.authenticate_finish("alice", response).error is ErrorKind.CHALLENGE_MISMATCH

    def test_stale_request_superseded_by_newer_one(self, server, token):
        server.register("alice", token)
        old = server.authenticate_request("alice").value
        server.authenticate_request("alice")
        result = server.authenticate_finish("alice", token.authenticate(old))
        assert result.error is ErrorKind.CHALLENGE_MISMATCH


class TestSignerFailures:
    def test_cancelled_registration_leaves_registry_untouched(self, server, token):
        token.cancel_next = True
        result = server.register("alice", token)
        assert result.error is ErrorKind.SIGNER_FAILURE
        assert "cancelled" in result.detail
        assert server.debug_dump() == {}
        assert len(server.pending) == 0

    def test_cancelled_authentication(self, server, token):
        server.register("alice", token)
        before = server.debug_dump()
        token.cancel_next = True
        assert server.authenticate("alice", token).error is ErrorKind.SIGNER_FAILURE
        assert server.debug_dump() == before
        assert server.authenticate("alice", token).ok

    def test_foreign_token_cannot_unwrap_key_handle(self, server, token):
        server.register("alice", token)
        other = SoftwareAuthenticator(pin="9999")
        assert server.authenticate("alice", other).error is ErrorKind.SIGNER_FAILURE

    def test_timeout_abandons_ceremony(self, server, token):
        release = threading.Event()

        class SlowSigner:
            def register(self, request):
                release.wait(5)
                return token.register(request)

        try:
            result = server.register("alice", SlowSigner(), timeout=0.05)
        finally:
            release.set()
        assert result.error is ErrorKind.SIGNER_FAILURE
        assert server.debug_dump() == {}

    def test_timed_out_signer_runs_in_daemon_thread(self, server, token):
        release = threading.Event()
        started = threading.Event()
        seen = {}

        class StuckSigner:
            def register(self, request):
                seen["daemon"] = threading.current_thread().daemon
                started.set()
                release.wait(5)
                return token.register(request)

        try:
            result = server.register("alice", StuckSigner(), timeout=0.05)
        finally:
            release.set()
        assert result.error is ErrorKind.SIGNER_FAILURE
        assert started.wait(5)
        assert seen["daemon"] is True

    def test_signer_errors_propagate_through_timeout_path(self, server):
        signer = MagicMock()
        signer.register.side_effect = RuntimeError("device unplugged")
        with pytest.raises(RuntimeError):
            server.register("alice", signer, timeout=1.0)

    def test_cancellation_reported_through_timeout_path(self, server, token):
        token.cancel_next = True
        assert server.register("alice", token, timeout=5.0).error is ErrorKind.SIGNER_FAILURE
        assert server.debug_dump() == {}

    def test_other_signer_errors_propagate(self, server):
        signer = MagicMock()
        signer.register.side_effect = RuntimeError("device unplugged")
        with pytest.raises(RuntimeError):
            server.register("alice", signer)


def test_concurrent_registrations(token):
    server = FidoServer(RelyingPartyConfig(app_id=APP_ID, facet_id=FACET_ID))
    results = {}

    def enroll(name):
        results[name] = server.register(name, token)

    threads = [threading.Thread(target=enroll, args=(f"user{i}",)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(r.ok for r in results.values())
    assert sorted(server.debug_dump()) == sorted(results)


def test_unenforced_server_accepts_any_challenge(token):
    config = RelyingPartyConfig(app_id=APP_ID, facet_id=FACET_ID, enforce_challenge_binding=False)
    server = FidoServer(config)
    server.register("alice", token)
    request = server.authenticate_request("alice").value
    response = token.authenticate(request)
    assert server.authenticate_finish("alice", response).ok
    assert server.authenticate_finish("alice", response).ok
