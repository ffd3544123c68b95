"""Tests for the session lifecycle controller.

The endpoint client and driver are fakes; the lease store, lock and platform
are real and work inside the tmp_path scratch directory.
"""

import json
import os
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from pydantic import ValidationError

from tpn.core.driver import WireGuardDriver
from tpn.core.errors import (
    AllEndpointsFailed,
    DriverActivationFailed,
    NothingToDisconnect,
    RemoteRejected,
    SessionLocked,
)
from tpn.core.lease import LeaseStore
from tpn.core.platform import LinuxPlatform
from tpn.core.privileges import PrivilegeGrant
from tpn.core.session import (
    ConnectRequest,
    DisconnectRequest,
    SessionController,
    SessionState,
)

NOW = 1_700_000_000
WG_CONFIG = "[Interface]\nPrivateKey = cHJpdmF0ZQ==\n\n[Peer]\nEndpoint = 198.51.100.4:51820\n"


class FakeClient:
    """Stands in for EndpointClient."""

    def __init__(self, settings, bodies=None, ips=None):
        self.settings = settings
        self.bodies = list(bodies or [WG_CONFIG])
        self.ips = list(ips or ["192.0.2.1", "198.51.100.4"])
        self.requests = []

    def request_config(self, country_code, lease_minutes, timeout=None):
        self.requests.append(
            {
                "country_code": country_code,
                "lease_minutes": lease_minutes,
                "timeout": timeout,
                "config_existed": self.settings.config_path.exists(),
            }
        )
        body = self.bodies.pop(0) if len(self.bodies) > 1 else self.bodies[0]
        if isinstance(body, Exception):
            raise body
        return body

    def lookup_public_ip(self):
        return self.ips.pop(0) if self.ips else None


@pytest.fixture
def client(settings):
    return FakeClient(settings)


@pytest.fixture
def driver():
    mock = MagicMock(spec=WireGuardDriver)
    mock.list_active_interfaces.return_value = []
    mock.deactivate.return_value = True
    return mock


@pytest.fixture
def store(settings):
    return LeaseStore(settings)


@pytest.fixture
def controller(settings, client, driver, store):
    return SessionController(
        settings=settings,
        client=client,
        driver=driver,
        store=store,
        platform=LinuxPlatform(),
        clock=lambda: NOW,
    )


def connect_request(**overrides):
    params = {"country_code": "US", "lease_minutes": 10, "skip_confirmation": True}
    params.update(overrides)
    return ConnectRequest(**params)


# =============================================================================
# Request validation
# =============================================================================


class TestRequests:
    def test_lease_must_be_positive(self):
        with pytest.raises(ValidationError):
            ConnectRequest(country_code="US", lease_minutes=0)

    def test_country_required(self):
        with pytest.raises(ValidationError):
            ConnectRequest(country_code="   ")

    def test_country_stripped(self):
        assert ConnectRequest(country_code=" NL ").country_code == "NL"

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            ConnectRequest(country_code="US", timeout_seconds=0)


# =============================================================================
# connect
# =============================================================================


class TestConnect:
    def test_connect_writes_config_activates_and_saves_lease(self, controller, settings, client, driver, store):
        result = controller.connect(connect_request())

        assert settings.config_path.read_text() == WG_CONFIG
        assert oct(settings.config_path.stat().st_mode & 0o777) == "0o600"
        driver.activate.assert_called_once_with(settings.config_path, verbose=False)
        assert client.requests[0]["country_code"] == "US"
        assert client.requests[0]["lease_minutes"] == 10

        expected_readable = datetime.fromtimestamp(NOW + 600).strftime("%Y-%m-%d %H:%M:%S")
        lease = store.load()
        assert lease.expiry_epoch == NOW + 600
        assert lease.expiry_readable == expected_readable
        assert result.lease == lease

        assert result.ip_before == "192.0.2.1"
        assert result.ip_after == "198.51.100.4"
        assert store.pending() is None
        assert not settings.lock_path.exists()

    def test_verbose_shows_config_before_activation(self, settings, client, driver, store):
        events = []
        driver.activate.side_effect = lambda *args, **kwargs: events.append("activate")
        controller = SessionController(
            settings, client, driver, store, LinuxPlatform(),
            notify=events.append, clock=lambda: NOW,
        )

        controller.connect(connect_request(verbose=True))

        config_shown = [i for i, event in enumerate(events) if "[Interface]" in event]
        assert config_shown
        assert config_shown[0] < events.index("activate")

    def test_quiet_connect_does_not_show_config(self, settings, client, driver, store):
        messages = []
        controller = SessionController(
            settings, client, driver, store, LinuxPlatform(), notify=messages.append
        )

        controller.connect(connect_request())

        assert not any("[Interface]" in message for message in messages)

    def test_timeout_override_forwarded(self, controller, client):
        controller.connect(connect_request(timeout_seconds=7))

        assert client.requests[0]["timeout"] == 7

    def test_connect_twice_replaces_old_config(self, controller, settings, client, driver):
        client.bodies = ["[Interface]\n# first\n", "[Interface]\n# second\n"]

        controller.connect(connect_request())
        second = controller.connect(connect_request())

        # Old config torn down and removed before the new one was fetched
        assert client.requests[1]["config_existed"] is False
        driver.deactivate.assert_called_once_with(settings.config_path, verbose=False)
        assert second.cleaned_stale_session is True
        assert settings.config_path.read_text() == "[Interface]\n# second\n"
        assert [p.name for p in settings.tmp_dir.glob("*.conf")] == ["tpn_config.conf"]

    def test_stale_cleanup_survives_failed_deactivate(self, controller, settings, driver):
        settings.config_path.write_text("stale")
        driver.deactivate.return_value = False

        controller.connect(connect_request())

        assert settings.config_path.read_text() == WG_CONFIG
        driver.activate.assert_called_once()

    def test_dry_run_fetches_but_never_activates(self, controller, settings, client, driver, store):
        result = controller.connect(connect_request(dry_run=True))

        assert len(client.requests) == 1
        assert settings.config_path.read_text() == WG_CONFIG
        driver.activate.assert_not_called()
        assert not store.exists()
        assert result.lease is None
        assert result.planned_actions == [f"wg-quick up {settings.config_path}"]
        assert store.pending() is None

    def test_dry_run_reports_stale_cleanup_without_doing_it(self, controller, settings, driver, store):
        settings.config_path.write_text("stale")
        store.save(NOW - 600, "old")

        result = controller.connect(connect_request(dry_run=True))

        driver.deactivate.assert_not_called()
        assert result.planned_actions[:2] == [
            f"wg-quick down {settings.config_path}",
            f"rm -f {settings.config_path}",
        ]
        assert store.load().expiry_readable == "old"

    def test_dry_run_still_rejects_error_payload(self, controller, settings, client):
        client.bodies = ['{"error":"insufficient lease"}']

        with pytest.raises(RemoteRejected):
            controller.connect(connect_request(dry_run=True))

        assert not settings.config_path.exists()

    def test_remote_rejection_removes_config(self, controller, settings, client, driver, store):
        client.bodies = ['{"error":"insufficient lease"}']

        with pytest.raises(RemoteRejected) as exc_info:
            controller.connect(connect_request())

        assert exc_info.value.message == "insufficient lease"
        assert not settings.config_path.exists()
        driver.activate.assert_not_called()
        assert not store.exists()
        assert store.pending() is None
        assert not settings.lock_path.exists()

    def test_undecodable_error_marker_still_cleans_up(self, controller, settings, client, driver, store):
        client.bodies = ['proxy said "error":"tab\there"']

        with pytest.raises(RemoteRejected) as exc_info:
            controller.connect(connect_request())

        assert exc_info.value.message == "tab\there"
        assert not settings.config_path.exists()
        driver.activate.assert_not_called()
        assert store.pending() is None

    def test_all_endpoints_failed_is_fatal(self, controller, settings, client, driver, store):
        client.bodies = [AllEndpointsFailed("/api/config/new")]

        with pytest.raises(AllEndpointsFailed):
            controller.connect(connect_request())

        assert not settings.config_path.exists()
        driver.activate.assert_not_called()
        assert store.pending() is None

    def test_activation_failure_keeps_config(self, controller, settings, driver, store):
        driver.activate.side_effect = DriverActivationFailed(settings.config_path, 1, "boom")

        with pytest.raises(DriverActivationFailed):
            controller.connect(connect_request())

        assert settings.config_path.read_text() == WG_CONFIG
        assert not store.exists()
        assert store.pending() is None

    def test_crash_leaves_pending_marker(self, controller, driver, store):
        driver.activate.side_effect = KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            controller.connect(connect_request())

        assert store.pending()["country_code"] == "US"

    def test_declined_confirmation_has_no_side_effects(self, settings, client, driver, store):
        questions = []
        controller = SessionController(
            settings, client, driver, store, LinuxPlatform(),
            confirm=lambda message: questions.append(message) or False,
        )

        result = controller.connect(connect_request(skip_confirmation=False))

        assert result.aborted is True
        assert questions == ["Connecting to US for 10 minutes"]
        assert client.requests == []
        assert not settings.config_path.exists()

    def test_missing_privilege_grant_offered(self, settings, client, driver, store):
        grant = MagicMock(spec=PrivilegeGrant)
        grant.is_installed.return_value = False
        controller = SessionController(
            settings, client, driver, store, LinuxPlatform(),
            privileges=grant, confirm=lambda message: True,
        )

        controller.connect(connect_request())

        grant.install.assert_called_once()

    def test_declined_privilege_grant_aborts(self, settings, client, driver, store):
        grant = MagicMock(spec=PrivilegeGrant)
        grant.is_installed.return_value = False
        controller = SessionController(
            settings, client, driver, store, LinuxPlatform(),
            privileges=grant, confirm=lambda message: False,
        )

        result = controller.connect(connect_request())

        assert result.aborted is True
        grant.install.assert_not_called()
        assert client.requests == []

    def test_concurrent_invocation_locked_out(self, controller, settings, client):
        settings.lock_path.write_text("4242")

        with patch("tpn.core.lock.is_process_running", return_value=True):
            with pytest.raises(SessionLocked):
                controller.connect(connect_request())

        assert client.requests == []


# =============================================================================
# disconnect
# =============================================================================


class TestDisconnect:
    def test_nothing_to_disconnect(self, controller, driver):
        with pytest.raises(NothingToDisconnect):
            controller.disconnect(DisconnectRequest())

        assert driver.method_calls == []

    def test_disconnect_removes_config_keeps_lease(self, controller, settings, driver, store):
        settings.config_path.write_text(WG_CONFIG)
        store.save(NOW + 600, "later")

        result = controller.disconnect(DisconnectRequest())

        driver.deactivate.assert_called_once_with(settings.config_path, verbose=False)
        assert not settings.config_path.exists()
        assert store.load().expiry_epoch == NOW + 600
        assert result.deactivated is True
        assert result.ip_before == "192.0.2.1"
        assert result.ip_after == "198.51.100.4"

    def test_failed_deactivate_still_removes_config(self, controller, settings, driver):
        settings.config_path.write_text(WG_CONFIG)
        driver.deactivate.return_value = False

        result = controller.disconnect(DisconnectRequest(verbose=True))

        assert result.deactivated is False
        assert not settings.config_path.exists()
        driver.deactivate.assert_called_once_with(settings.config_path, verbose=True)

    def test_dry_run_touches_nothing(self, controller, settings, driver):
        settings.config_path.write_text(WG_CONFIG)

        result = controller.disconnect(DisconnectRequest(dry_run=True))

        driver.deactivate.assert_not_called()
        assert settings.config_path.exists()
        assert result.planned_actions == [f"wg-quick down {settings.config_path}"]


# =============================================================================
# status
# =============================================================================


class TestStatus:
    def test_disconnected_ignores_stale_lease(self, controller, driver, store):
        store.save(NOW + 3600, "later")
        driver.list_active_interfaces.return_value = []

        report = controller.status()

        assert report.state is SessionState.DISCONNECTED
        assert report.lease is None
        assert report.remaining_minutes is None

    def test_connected_from_interfaces_not_config_file(self, controller, settings, driver):
        driver.list_active_interfaces.return_value = ["tpn_config"]

        report = controller.status()

        assert not settings.config_path.exists()
        assert report.state is SessionState.CONNECTED

    def test_expired_lease_reports_zero(self, controller, driver, store):
        store.save(NOW - 10, "just now")
        driver.list_active_interfaces.return_value = ["tpn_config"]

        report = controller.status()

        assert report.remaining_minutes == 0

    def test_remaining_minutes(self, controller, driver, store):
        store.save(NOW + 25 * 60 + 30, "later")
        driver.list_active_interfaces.return_value = ["tpn_config"]

        report = controller.status()

        assert report.remaining_minutes == 25
        assert report.lease.expiry_readable == "later"

    def test_connected_without_lease(self, controller, driver):
        driver.list_active_interfaces.return_value = ["wg0"]

        report = controller.status()

        assert report.connected
        assert report.lease is None
        assert report.to_dict()["lease_end"] is None

    def test_reports_public_ip(self, controller):
        assert controller.status().public_ip == "192.0.2.1"

    def test_interrupted_connect_detected(self, controller, settings):
        settings.pending_path.write_text(json.dumps({"pid": 4242, "country_code": "US"}))

        with patch("tpn.core.session.is_process_running", return_value=False):
            report = controller.status()

        assert report.interrupted_connect["country_code"] == "US"

    def test_connect_in_progress_not_flagged(self, controller, settings):
        settings.pending_path.write_text(json.dumps({"pid": 4242}))

        with patch("tpn.core.session.is_process_running", return_value=True):
            assert controller.status().interrupted_connect is None

    def test_own_marker_counts_as_interrupted(self, controller, store):
        store.mark_pending("US", 10)
        assert store.pending()["pid"] == os.getpid()

        assert controller.status().interrupted_connect is not None

    def test_non_object_marker_reported_as_interrupted(self, controller, settings):
        settings.pending_path.write_text("[4242]")

        assert controller.status().interrupted_connect == {"pid": None}
