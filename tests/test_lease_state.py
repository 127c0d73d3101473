"""Tests for the deployment lease, LastKnownGood store and incident reports."""

import logging
from pathlib import Path

import pytest

from src.deployment.config import SlotColor
from src.deployment.exceptions import IntegrityError, LeaseError
from src.deployment.incident import IncidentReporter
from src.deployment.lease import DeploymentLease, default_owner
from src.deployment.state import LastKnownGoodStore

V1 = "registry.example.com/app:v1"
V2 = "registry.example.com/app:v2"
V3 = "registry.example.com/app:v3"


# ── Lease ────────────────────────────────────────────────────────────


class TestDeploymentLease:
    def test_acquire_and_release(self, lease):
        held = lease.acquire("alice@ops:1")
        assert held.owner == "alice@ops:1"
        assert lease.current().owner == "alice@ops:1"
        assert lease.release("alice@ops:1") is True
        assert lease.current() is None

    def test_second_owner_rejected(self, lease):
        lease.acquire("alice@ops:1")
        with pytest.raises(LeaseError) as excinfo:
            lease.acquire("bob@ops:2")
        assert excinfo.value.holder == "alice@ops:1"

    def test_same_owner_renews(self, lease, clock):
        first = lease.acquire("alice@ops:1")
        clock.advance(100)
        second = lease.acquire("alice@ops:1")
        assert second.expires_at > first.expires_at

    def test_expired_lease_taken_over(self, lease, clock):
        lease.acquire("alice@ops:1")
        clock.advance(1801)
        taken = lease.acquire("bob@ops:2")
        assert taken.owner == "bob@ops:2"

    def test_unreadable_lease_taken_over(self, lease, caplog):
        lease.path.parent.mkdir(parents=True, exist_ok=True)
        lease.path.write_text("{not json")

        with caplog.at_level(logging.WARNING):
            taken = lease.acquire("bob@ops:2")

        assert taken.owner == "bob@ops:2"
        assert lease.current().owner == "bob@ops:2"
        assert any("unreadable lease" in r.getMessage() for r in caplog.records)

    def test_empty_lease_file_taken_over(self, lease):
        lease.path.parent.mkdir(parents=True, exist_ok=True)
        lease.path.write_text("")
        assert lease.acquire("bob@ops:2").owner == "bob@ops:2"
        assert lease.release("bob@ops:2") is True

    def test_release_by_other_owner_ignored(self, lease):
        lease.acquire("alice@ops:1")
        assert lease.release("bob@ops:2") is False
        assert lease.current().owner == "alice@ops:1"

    def test_hold_releases_on_error(self, lease):
        with pytest.raises(RuntimeError):
            with lease.hold("alice@ops:1"):
                raise RuntimeError("boom")
        assert lease.current() is None

    def test_environments_are_independent(self, env_config, clock):
        production = DeploymentLease(env_config.state_dir, "production", clock=clock)
        staging = DeploymentLease(env_config.state_dir, "staging", clock=clock)
        production.acquire("alice@ops:1")
        assert staging.acquire("bob@ops:2").owner == "bob@ops:2"

    def test_default_owner_format(self):
        owner = default_owner()
        assert "@" in owner and ":" in owner


# ── LastKnownGood ────────────────────────────────────────────────────


class TestLastKnownGoodStore:
    def test_empty(self, lkg_store):
        assert lkg_store.get() is None
        assert lkg_store.previous() is None
        assert lkg_store.rollback_marker() is None

    def test_record_shifts_previous(self, lkg_store):
        lkg_store.record(SlotColor.BLUE, V1)
        lkg_store.record(SlotColor.GREEN, V2)
        assert (lkg_store.get().color, lkg_store.get().image) == (SlotColor.GREEN, V2)
        assert lkg_store.previous().image == V1

    def test_record_clears_rollback_marker(self, lkg_store):
        lkg_store.record(SlotColor.BLUE, V1)
        lkg_store.record_rollback(SlotColor.BLUE, V1)
        assert lkg_store.rollback_marker().image == V1
        lkg_store.record(SlotColor.GREEN, V3)
        assert lkg_store.rollback_marker() is None

    def test_rollback_replaces_current(self, lkg_store):
        lkg_store.record(SlotColor.BLUE, V1)
        lkg_store.record(SlotColor.GREEN, V2)
        lkg_store.record(SlotColor.BLUE, V3)

        lkg_store.record_rollback(SlotColor.GREEN, V2)

        assert (lkg_store.get().color, lkg_store.get().image) == (SlotColor.GREEN, V2)
        assert lkg_store.rollback_marker().image == V2
        assert lkg_store.previous() is None

    def test_persisted_across_instances(self, lkg_store, env_config, clock):
        lkg_store.record(SlotColor.GREEN, V2)
        reopened = LastKnownGoodStore(env_config.state_dir, env_config.environment, clock)
        assert reopened.get().image == V2
        assert reopened.get().recorded_at == clock.now()

    def test_corrupt_file(self, lkg_store):
        lkg_store.path.parent.mkdir(parents=True, exist_ok=True)
        lkg_store.path.write_text("{not json")
        with pytest.raises(IntegrityError):
            lkg_store.get()


# ── Incident reports ─────────────────────────────────────────────────


class TestIncidentReporter:
    def test_report_contents(self, runtime, env_config, clock):
        runtime.start_slot("app-blue", V1, 8080)
        runtime.container_logs["app-blue"] = "line one\nERROR something broke\n"
        runtime.host_outputs["free -h"] = "Mem: 8Gi"
        reporter = IncidentReporter(runtime, env_config, clock)

        before = reporter.capture_containers()
        runtime.stop("app-blue")
        snapshot = reporter.report("deploy-failed", before, RuntimeError("boom"))

        text = Path(snapshot.report_path).read_text()
        assert "Type: deploy-failed" in text
        assert "Error: boom" in text
        assert "ERROR something broke" in text
        assert "Mem: 8Gi" in text
        assert snapshot.containers_before[0].running
        assert not snapshot.containers_after[0].running

    def test_unreachable_host_still_writes_report(self, runtime, env_config, clock):
        reporter = IncidentReporter(runtime, env_config, clock)
        runtime.offline = True
        snapshot = reporter.report("failed-rollback", reporter.capture_containers())
        text = Path(snapshot.report_path).read_text()
        assert "unavailable" in text
        assert snapshot.containers_after == []
