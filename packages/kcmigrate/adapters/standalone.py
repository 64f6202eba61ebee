"""
Standalone deployment: release directories on one host, managed by systemd

Layout:
    /opt/keycloak               -> symlink to the serving release
    /opt/keycloak-<version>/    one directory per installed release

A step installs the new release next to the old one, copies conf/ across,
runs `kc.sh build`, flips the symlink and restarts the unit. Rollback flips
the symlink back to the prior release directory.
"""

import logging
import os
import re
import shutil
from pathlib import Path
from typing import List, Optional

from ..errors import AdapterError
from ..profile import DistributionMode, Strategy
from .base import Deployment, DeploymentAdapter
from .process import CommandRunner

logger = logging.getLogger(__name__)

_VERSION_IN_TEXT = re.compile(r"(\d+(?:\.\d+)+)")


class StandaloneDeployment(DeploymentAdapter):

    def __init__(self, profile, http_client=None, runner: Optional[CommandRunner] = None):
        super().__init__(profile, http_client)
        self.runner = runner or CommandRunner()
        self.home = Path(self.deployment.home_dir)

    def required_tools(self) -> List[str]:
        tools = ["systemctl"]
        if self.deployment.distribution == DistributionMode.DOWNLOAD:
            tools += ["curl", "tar"]
        return tools

    def release_dir(self, version: str) -> Path:
        return self.home.parent / f"{self.home.name}-{version}"

    def current_version(self) -> Optional[str]:
        version_file = self.home / "version.txt"
        if version_file.exists():
            match = _VERSION_IN_TEXT.search(version_file.read_text(encoding="utf-8"))
            if match:
                return match.group(1)
        if self.home.is_symlink():
            match = _VERSION_IN_TEXT.search(os.readlink(self.home))
            if match:
                return match.group(1)
        return None

    def deploy(self, version: str, strategy: Strategy) -> Deployment:
        if strategy != Strategy.INPLACE:
            raise AdapterError(f"Standalone deployment does not support {strategy.value}", code="STRATEGY_UNSUPPORTED")

        try:
            target = self._ensure_release(version)
            self._carry_config(target)
            self._systemctl("stop")
            self._activate(target)
            self._build(target)
            self._systemctl("start")
        except OSError as e:
            raise AdapterError(f"Installing release {version} failed: {e}", code="FILESYSTEM_ERROR") from e
        return Deployment(
            version=version,
            strategy=strategy,
            endpoint=self.deployment.health_url,
            service_url=self.deployment.service_url,
            details={"release_dir": str(target)},
        )

    def rollback(self, prior: Deployment) -> Deployment:
        target = self.release_dir(prior.version)
        if not target.exists():
            raise AdapterError(f"Prior release directory {target} is gone", code="RELEASE_MISSING")
        try:
            self._systemctl("stop")
            self._activate(target)
            self._systemctl("start")
        except OSError as e:
            raise AdapterError(f"Switching back to {target} failed: {e}", code="FILESYSTEM_ERROR") from e
        return prior

    def _systemctl(self, action: str) -> None:
        logger.info(f"systemctl {action} {self.deployment.service_name}")
        self.runner.run(["systemctl", action, self.deployment.service_name], timeout=120)

    def _ensure_release(self, version: str) -> Path:
        target = self.release_dir(version)
        if target.exists():
            return target

        if self.deployment.distribution != DistributionMode.DOWNLOAD:
            raise AdapterError(
                f"Release {version} not found at {target} (distribution: {self.deployment.distribution.value})",
                code="RELEASE_MISSING",
            )

        archive = self.home.parent / f"keycloak-{version}.tar.gz"
        url = f"{self.deployment.download_url.rstrip('/')}/{version}/keycloak-{version}.tar.gz"
        logger.info(f"Downloading {url}")
        self.runner.run(["curl", "-fsSL", "-o", str(archive), url], timeout=self.timeout)

        staging = self.home.parent / f".staging-{version}"
        staging.mkdir(parents=True, exist_ok=True)
        self.runner.run(["tar", "-xzf", str(archive), "-C", str(staging), "--strip-components=1"], timeout=self.timeout)
        staging.rename(target)
        archive.unlink()
        return target

    def _carry_config(self, target: Path) -> None:
        source = self.home / "conf"
        if not source.is_dir():
            return
        dest = target / "conf"
        dest.mkdir(parents=True, exist_ok=True)
        for item in source.iterdir():
            if item.is_file():
                shutil.copy2(item, dest / item.name)

    def _activate(self, target: Path) -> None:
        if self.home.exists() and not self.home.is_symlink():
            raise AdapterError(f"{self.home} is a directory, expected a symlink to a release", code="LAYOUT_INVALID")
        tmp = self.home.parent / f".{self.home.name}.next"
        if tmp.is_symlink():
            tmp.unlink()
        tmp.symlink_to(target)
        os.replace(tmp, self.home)

    def _build(self, target: Path) -> None:
        kc = target / "bin" / "kc.sh"
        if kc.exists():
            self.runner.run([str(kc), "build"], timeout=self.timeout)
