"""End-to-end tests for the command-line interface."""

import httpx
import pytest

import main
from src.deployment.config import SlotColor
from src.deployment.state import LastKnownGoodStore
from src.testing.mocks import FakeClock, MockContainerRuntime, UNHEALTHY

V1 = "registry.example.com/app:v1"
V2 = "registry.example.com/app:v2"


@pytest.fixture
def cli(tmp_path, monkeypatch):
    """Wire main() to an in-memory runtime and a configs dir under tmp_path."""
    configs = tmp_path / "configs"
    configs.mkdir()
    (configs / "production.env").write_text(
        "TARGET_SERVER=prod.example.com\n"
        "CONTROL_USER=deploy\n"
        "SLOT_NAME=app\n"
        "PRODUCTION_PORT=8080\n"
        "CONTAINER_PORT=8000\n"
        "IMAGE_REPOSITORY=registry.example.com/app\n"
        f"BACKUP_DIR={tmp_path / 'backups'}\n"
        f"STATE_DIR={tmp_path / 'state'}\n"
        f"REPORTS_DIR={tmp_path / 'reports'}\n"
    )
    runtime = MockContainerRuntime(host_root=str(tmp_path / "host"))
    clock = FakeClock()
    logging_configs = []

    monkeypatch.setattr(main, "build_runtime", lambda config, settings: runtime)
    monkeypatch.setattr(
        main, "build_http_client",
        lambda deploy_config: httpx.Client(transport=runtime.http_transport()),
    )
    monkeypatch.setattr(main, "build_clock", lambda: clock)
    monkeypatch.setattr(main, "configure_logging", logging_configs.append)

    class Cli:
        def __init__(self):
            self.runtime = runtime
            self.clock = clock
            self.state_dir = str(tmp_path / "state")
            self.logging_configs = logging_configs

        def __call__(self, *argv):
            return main.main(["--config-dir", str(configs), *argv])

    return Cli()


# ── Parser ───────────────────────────────────────────────────────────


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args([])

    def test_defaults(self):
        args = main.build_parser().parse_args(["rollback", "production"])
        assert args.mode == "auto"
        assert args.list is False

    def test_unknown_mode_rejected(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args(["health", "production", "--mode", "deep"])

    def test_logging_flags(self, cli):
        cli("--log-level", "DEBUG", "--log-format", "json", "health", "production")
        config = cli.logging_configs[0]
        assert config.level.value == "DEBUG"
        assert config.format.value == "json"


# ── deploy ───────────────────────────────────────────────────────────


class TestDeployCommand:
    def test_success(self, cli, capsys):
        cli.runtime.start_slot("app-blue", V1, 8080)
        cli.runtime.publish(V2)

        assert cli("deploy", "production", V2) == 0

        out = capsys.readouterr().out
        assert ": complete" in out
        assert "app-green serves " + V2 in out
        assert cli.runtime.bound_container(8080).name == "app-green"

    def test_unhealthy_image(self, cli, capsys):
        cli.runtime.start_slot("app-blue", V1, 8080)
        cli.runtime.publish(V2, behaviour=UNHEALTHY)

        assert cli("deploy", "production", V2) == 1

        out = capsys.readouterr().out
        assert "failed during" in out
        assert "incident report" in out
        assert cli.runtime.bound_container(8080).name == "app-blue"

    def test_missing_config(self, cli, capsys):
        assert cli("deploy", "staging", V2) == 1
        assert "Configuration error" in capsys.readouterr().out


# ── rollback ─────────────────────────────────────────────────────────


class TestRollbackCommand:
    def _green_serving_v2(self, cli):
        cli.runtime.add_image(V1)
        cli.runtime.start_slot("app-green", V2, 8080)
        store = LastKnownGoodStore(cli.state_dir, "production", cli.clock)
        store.record(SlotColor.BLUE, V1)
        store.record(SlotColor.GREEN, V2)

    def test_container_rollback(self, cli, capsys):
        self._green_serving_v2(cli)

        assert cli("rollback", "production") == 0

        out = capsys.readouterr().out
        assert "success via container tier" in out
        assert cli.runtime.bound_container(8080).image == V1

    def test_list_options(self, cli, capsys):
        self._green_serving_v2(cli)

        assert cli("rollback", "production", "--list") == 0

        out = capsys.readouterr().out
        assert "Active slot: green" in out
        assert "Previous known good: " + V1 in out
        assert "Data backups: 0" in out
        assert cli.runtime.calls == []

    def test_backup_tier_without_backups(self, cli, capsys):
        self._green_serving_v2(cli)

        assert cli("rollback", "production", "--mode", "backup") == 1

        out = capsys.readouterr().out
        assert "Rollback failed" in out
        assert "incident report" in out


# ── health ───────────────────────────────────────────────────────────


class TestHealthCommand:
    def test_healthy(self, cli, capsys):
        cli.runtime.start_slot("app-blue", V1, 8080)
        assert cli("health", "production", "--mode", "http") == 0
        assert "Overall: healthy" in capsys.readouterr().out

    def test_nothing_running(self, cli, capsys):
        assert cli("health", "production", "--mode", "container") == 1
        assert "Overall: unhealthy" in capsys.readouterr().out


# ── backup ───────────────────────────────────────────────────────────


class TestBackupCommand:
    def test_create_config_backup(self, cli, capsys):
        configs = cli.runtime.host_path("/opt/app/configs")
        configs.mkdir(parents=True)
        (configs / "production.env").write_text("KEY=value")

        assert cli("backup", "production", "--kind", "config") == 0
        assert "verified" in capsys.readouterr().out

    def test_list(self, cli, capsys):
        assert cli("backup", "production", "--list") == 0
        out = capsys.readouterr().out
        assert "Backups in" in out
        assert "data" in out

    def test_verify_corrupt(self, cli, tmp_path, capsys):
        bad = tmp_path / "bad.tar.gz"
        bad.write_bytes(b"not an archive")
        assert cli("backup", "production", "--verify", str(bad)) == 1
        assert "CORRUPT" in capsys.readouterr().out

    def test_unreachable_host(self, cli, capsys):
        cli.runtime.offline = True
        assert cli("backup", "production", "--kind", "config") == 1
        assert "backup failed" in capsys.readouterr().out
