"""
Live gateway configuration and its activation.

The ReloadCoordinator is the only writer of the live configuration tree.
Every change goes stage -> test -> promote -> reload under one global lock;
a candidate that fails the test never reaches the live tree and never
triggers a reload.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from config import get_nginx_root, settings
from core.command_runner import CommandRunner, CommandTimeout, get_command_runner
from core.config_validator import MAIN_CONFIG, ConfigChangeSet, ConfigValidator, get_config_validator
from core.file_helpers import safe_relative_path, write_atomic

logger = logging.getLogger(__name__)


class LiveConfigTree:
    """Handle on the configuration directory the running gateway reads."""

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root) if root else get_nginx_root()

    @property
    def main_config(self) -> Path:
        return self.root / MAIN_CONFIG

    def path(self, relative: str) -> Path:
        return self.root / safe_relative_path(relative)

    def exists(self, relative: str) -> bool:
        return self.path(relative).exists()

    def read(self, relative: str) -> Optional[str]:
        path = self.path(relative)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def promote(self, change_set: ConfigChangeSet) -> None:
        """Write every file atomically, then unlink removals."""
        for rel, content in sorted(change_set.files.items()):
            write_atomic(self.path(rel), content)
        for rel in change_set.removals:
            self.path(rel).unlink(missing_ok=True)


@dataclass
class ApplyResult:
    """Outcome of applying a change set."""

    success: bool
    output: str = ""
    reloaded: bool = False
    files: list[str] = field(default_factory=list)


class ReloadCoordinator:
    """Serializes configuration changes and gateway reloads."""

    def __init__(
        self,
        live_tree: Optional[LiveConfigTree] = None,
        validator: Optional[ConfigValidator] = None,
        runner: Optional[CommandRunner] = None,
        nginx_binary: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.live_tree = live_tree or LiveConfigTree()
        self.validator = validator or get_config_validator()
        self.runner = runner or get_command_runner()
        self.nginx_binary = nginx_binary or settings.nginx_binary
        self.timeout = timeout or settings.nginx_operation_timeout
        self._lock = asyncio.Lock()

    async def apply(self, change_set: ConfigChangeSet, reload: bool = True) -> ApplyResult:
        """
        Validate a change set against a staged copy and activate it.

        Concurrent calls queue on the lock. If the candidate fails `nginx -t`
        the live tree is left byte-identical and no reload is sent.

        Raises:
            ValidationError: Change set paths escape the configuration root
            ValidatorTimeout: The syntax test did not finish in time
        """
        async with self._lock:
            staged = self.validator.stage(change_set, self.live_tree.root)
            try:
                ok, output = await self.validator.test(staged)
            finally:
                self.validator.discard(staged)

            if not ok:
                logger.warning(f"Configuration change rejected: {', '.join(change_set.paths)}")
                return ApplyResult(success=False, output=output, files=change_set.paths)

            self.live_tree.promote(change_set)
            logger.info(f"Configuration promoted: {', '.join(change_set.paths)}")

            reloaded = False
            if reload:
                reloaded, reload_output = await self._reload()
                if reload_output:
                    output = "\n".join(part for part in (output, reload_output) if part)

            return ApplyResult(success=True, output=output, reloaded=reloaded, files=change_set.paths)

    async def reload(self) -> tuple[bool, str]:
        """Reload the gateway with the current live tree."""
        async with self._lock:
            return await self._reload()

    async def test(self) -> tuple[bool, str]:
        """Run `nginx -t` against the live tree as it is."""
        async with self._lock:
            return await self.validator.test_config(self.live_tree.main_config)

    async def _reload(self) -> tuple[bool, str]:
        command = [self.nginx_binary, "-c", str(self.live_tree.main_config), "-s", "reload"]
        try:
            result = await self.runner.run(command, timeout=self.timeout)
        except CommandTimeout as e:
            logger.error(f"Gateway reload timed out after {e.timeout}s")
            return False, f"Reload timed out after {e.timeout}s"
        except FileNotFoundError:
            return False, f"nginx binary not found: {self.nginx_binary}"

        if result.success:
            logger.info("Gateway reloaded")
        else:
            logger.error(f"Gateway reload failed: {result.output}")
        return result.success, result.output


# Singleton instance
_reload_coordinator: Optional[ReloadCoordinator] = None


def get_reload_coordinator() -> ReloadCoordinator:
    """Get the global reload coordinator instance."""
    global _reload_coordinator
    if _reload_coordinator is None:
        _reload_coordinator = ReloadCoordinator()
    return _reload_coordinator
