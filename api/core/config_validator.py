"""
Candidate configuration staging and syntax testing.

A change set is overlaid onto a private copy of the live tree and tested
with `nginx -t` there. The live tree itself is only ever read.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from config import get_staging_dir, settings
from core.command_runner import CommandRunner, CommandTimeout, get_command_runner
from core.errors import ValidationError, ValidatorTimeout
from core.file_helpers import safe_relative_path

logger = logging.getLogger(__name__)

MAIN_CONFIG = "nginx.conf"


@dataclass
class ConfigChangeSet:
    """Files to write and files to remove, relative to the configuration root."""

    files: dict[str, str] = field(default_factory=dict)
    removals: list[str] = field(default_factory=list)

    def validate(self) -> None:
        """Raises ValidationError for paths that escape the root."""
        for rel in [*self.files, *self.removals]:
            try:
                safe_relative_path(rel)
            except ValueError as e:
                raise ValidationError(str(e))

    @property
    def paths(self) -> list[str]:
        return sorted([*self.files, *self.removals])

    def is_empty(self) -> bool:
        return not self.files and not self.removals


@dataclass
class StagedConfig:
    """A candidate configuration tree in the staging directory."""

    root: Path

    @property
    def main_config(self) -> Path:
        return self.root / MAIN_CONFIG


class ConfigValidator:
    """Stages candidate trees and runs the gateway's syntax test on them."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        staging_dir: Optional[Path] = None,
        nginx_binary: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.runner = runner or get_command_runner()
        self.staging_dir = Path(staging_dir) if staging_dir else get_staging_dir()
        self.nginx_binary = nginx_binary or settings.nginx_binary
        self.timeout = timeout or settings.nginx_operation_timeout

    def stage(self, change_set: ConfigChangeSet, live_root: Path) -> StagedConfig:
        """
        Copy the live tree into a fresh staging directory and overlay the change set.

        Certificate material is not copied; generated configs reference it
        by absolute path.
        """
        change_set.validate()
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix="candidate-", dir=self.staging_dir))

        try:
            if live_root.exists():
                shutil.copytree(live_root, root, dirs_exist_ok=True, ignore=shutil.ignore_patterns("ssl"))

            for rel, content in change_set.files.items():
                target = root / safe_relative_path(rel)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content, encoding="utf-8")

            for rel in change_set.removals:
                (root / safe_relative_path(rel)).unlink(missing_ok=True)
        except OSError:
            shutil.rmtree(root, ignore_errors=True)
            raise

        logger.debug(f"Staged candidate configuration at {root} ({len(change_set.paths)} change(s))")
        return StagedConfig(root=root)

    async def test_config(self, config_path: Path) -> tuple[bool, str]:
        """
        Run `nginx -t` against a main configuration file.

        Raises:
            ValidatorTimeout: If the test did not finish in time
        """
        command = [self.nginx_binary, "-t", "-c", str(config_path)]
        try:
            result = await self.runner.run(command, timeout=self.timeout)
        except CommandTimeout as e:
            raise ValidatorTimeout(
                f"Configuration test timed out after {e.timeout}s",
                output="\n".join(part for part in (e.stderr, e.stdout) if part),
            )
        except FileNotFoundError:
            return False, f"nginx binary not found: {self.nginx_binary}"

        return result.success, result.output

    async def test(self, staged: StagedConfig) -> tuple[bool, str]:
        """Test a staged candidate tree."""
        ok, output = await self.test_config(staged.main_config)
        if not ok:
            logger.warning(f"Candidate configuration failed nginx -t: {output}")
        return ok, output

    def discard(self, staged: StagedConfig) -> None:
        shutil.rmtree(staged.root, ignore_errors=True)


# Singleton instance
_config_validator: Optional[ConfigValidator] = None


def get_config_validator() -> ConfigValidator:
    """Get the global config validator instance."""
    global _config_validator
    if _config_validator is None:
        _config_validator = ConfigValidator()
    return _config_validator
