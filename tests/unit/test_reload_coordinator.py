"""
Unit tests for candidate staging, nginx -t validation and the reload
coordinator.

nginx is replaced by a scripted runner that "fails" any candidate tree
containing the word `broken_directive`.
"""

import asyncio
from pathlib import Path

import pytest

from core.command_runner import CommandTimeout
from core.config_validator import ConfigChangeSet, ConfigValidator
from core.errors import ValidationError, ValidatorTimeout
from core.reload_coordinator import LiveConfigTree, ReloadCoordinator


def snapshot(root: Path) -> dict:
    return {str(p.relative_to(root)): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


@pytest.fixture
def live_root(tmp_path):
    root = tmp_path / "nginx"
    (root / "conf.d").mkdir(parents=True)
    (root / "ssl").mkdir()
    (root / "nginx.conf").write_text("events {}\nhttp { include conf.d/*.conf; }\n")
    (root / "conf.d" / "existing.conf").write_text("server { listen 444; }\n")
    (root / "ssl" / "existing.key").write_text("PRIVATE")
    return root


@pytest.fixture
def nginx(fake_runner, command_result):
    """Scripted nginx: -t fails on broken_directive, reload succeeds."""

    def handler(command, env):
        if "-t" in command:
            main = Path(command[command.index("-c") + 1])
            text = "".join(p.read_text() for p in main.parent.rglob("*.conf")) + main.read_text()
            if "broken_directive" in text:
                return command_result(exit_code=1, stderr='nginx: [emerg] unknown directive "broken_directive"')
            return command_result(stderr="nginx: configuration file test is successful")
        return command_result()

    fake_runner.handler = handler
    return fake_runner


@pytest.fixture
def validator(nginx, tmp_path):
    return ConfigValidator(runner=nginx, staging_dir=tmp_path / "staging", nginx_binary="nginx", timeout=5)


@pytest.fixture
def coordinator(live_root, validator, nginx):
    return ReloadCoordinator(
        live_tree=LiveConfigTree(live_root),
        validator=validator,
        runner=nginx,
        nginx_binary="nginx",
        timeout=5,
    )


class TestConfigChangeSet:
    """Test change set path validation."""

    @pytest.mark.parametrize("path", ["/etc/nginx/nginx.conf", "../outside.conf", "conf.d/../../x.conf", ""])
    def test_escaping_paths_rejected(self, path):
        with pytest.raises(ValidationError):
            ConfigChangeSet(files={path: "x"}).validate()

    def test_paths_sorted(self):
        change = ConfigChangeSet(files={"b.conf": "", "a.conf": ""}, removals=["c.conf"])
        assert change.paths == ["a.conf", "b.conf", "c.conf"]


class TestConfigValidator:
    """Test staging of candidate trees."""

    def test_stage_overlays_change_set(self, validator, live_root):
        change = ConfigChangeSet(files={"conf.d/new.conf": "server {}\n"}, removals=["conf.d/existing.conf"])

        staged = validator.stage(change, live_root)
        try:
            assert (staged.root / "nginx.conf").exists()
            assert (staged.root / "conf.d" / "new.conf").read_text() == "server {}\n"
            assert not (staged.root / "conf.d" / "existing.conf").exists()
            assert not (staged.root / "ssl").exists()
        finally:
            validator.discard(staged)

        assert not staged.root.exists()
        assert (live_root / "conf.d" / "existing.conf").exists()

    @pytest.mark.asyncio
    async def test_timeout_raises(self, validator, nginx, live_root):
        nginx.handler = lambda command, env: CommandTimeout(command, 5)

        with pytest.raises(ValidatorTimeout):
            await validator.test_config(live_root / "nginx.conf")

    @pytest.mark.asyncio
    async def test_missing_binary_fails(self, validator, nginx, live_root):
        nginx.handler = lambda command, env: FileNotFoundError("nginx")

        ok, output = await validator.test_config(live_root / "nginx.conf")

        assert ok is False
        assert "not found" in output


class TestReloadCoordinator:
    """Test stage -> test -> promote -> reload."""

    @pytest.mark.asyncio
    async def test_valid_change_promoted_and_reloaded(self, coordinator, nginx, live_root):
        result = await coordinator.apply(ConfigChangeSet(files={"conf.d/app.conf": "server { listen 444; }\n"}))

        assert result.success
        assert result.reloaded
        assert (live_root / "conf.d" / "app.conf").read_text() == "server { listen 444; }\n"
        reloads = nginx.commands_with("reload")
        assert reloads == [["nginx", "-c", str(live_root / "nginx.conf"), "-s", "reload"]]

    @pytest.mark.asyncio
    async def test_test_runs_against_staged_copy(self, coordinator, nginx, live_root):
        await coordinator.apply(ConfigChangeSet(files={"conf.d/app.conf": "server {}\n"}))

        tested = nginx.commands_with("-t")[0]
        config_path = Path(tested[tested.index("-c") + 1])
        assert config_path.name == "nginx.conf"
        assert config_path.parent != live_root

    @pytest.mark.asyncio
    async def test_failed_test_leaves_live_tree_untouched(self, coordinator, nginx, live_root):
        before = snapshot(live_root)

        result = await coordinator.apply(
            ConfigChangeSet(
                files={"conf.d/app.conf": "server { broken_directive; }\n", "nginx.conf": "changed\n"},
                removals=["conf.d/existing.conf"],
            )
        )

        assert not result.success
        assert "broken_directive" in result.output
        assert snapshot(live_root) == before
        assert nginx.commands_with("reload") == []

    @pytest.mark.asyncio
    async def test_staging_cleaned_up(self, coordinator, tmp_path):
        await coordinator.apply(ConfigChangeSet(files={"conf.d/ok.conf": "server {}\n"}))
        await coordinator.apply(ConfigChangeSet(files={"conf.d/bad.conf": "broken_directive;\n"}))

        assert list((tmp_path / "staging").iterdir()) == []

    @pytest.mark.asyncio
    async def test_removal(self, coordinator, live_root):
        result = await coordinator.apply(ConfigChangeSet(removals=["conf.d/existing.conf"]))

        assert result.success
        assert not (live_root / "conf.d" / "existing.conf").exists()

    @pytest.mark.asyncio
    async def test_reload_failure_after_promote(self, coordinator, nginx, live_root, command_result):
        test_handler = nginx.handler
        nginx.handler = lambda command, env: (
            command_result(exit_code=1, stderr="nginx: [error] invalid PID number")
            if "reload" in command
            else test_handler(command, env)
        )

        result = await coordinator.apply(ConfigChangeSet(files={"conf.d/app.conf": "server {}\n"}))

        assert result.success
        assert result.reloaded is False
        assert "invalid PID" in result.output
        assert (live_root / "conf.d" / "app.conf").exists()

    @pytest.mark.asyncio
    async def test_apply_without_reload(self, coordinator, nginx):
        result = await coordinator.apply(ConfigChangeSet(files={"conf.d/app.conf": "server {}\n"}), reload=False)

        assert result.success
        assert nginx.commands_with("reload") == []

    @pytest.mark.asyncio
    async def test_applies_are_serialized(self, coordinator, nginx, live_root, command_result):
        active = 0
        peak = 0
        test_handler = nginx.handler

        async def slow_run(command, timeout=None, env=None, cwd=None):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return test_handler(command, env)

        nginx.run = slow_run

        results = await asyncio.gather(
            *(coordinator.apply(ConfigChangeSet(files={f"conf.d/site{i}.conf": "server {}\n"})) for i in range(5))
        )

        assert all(r.success for r in results)
        assert peak == 1
        assert len(list((live_root / "conf.d").glob("site*.conf"))) == 5

    @pytest.mark.asyncio
    async def test_manual_test_and_reload(self, coordinator, nginx, live_root):
        ok, output = await coordinator.test()
        assert ok
        assert "successful" in output

        ok, _ = await coordinator.reload()
        assert ok
        assert len(nginx.commands_with("reload")) == 1
