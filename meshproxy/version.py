"""Build information for the running proxy."""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass

UNKNOWN = "unknown"

BUILD_VERSION_VAR = "MESHPROXY_BUILD_VERSION"
BUILD_GIT_REVISION_VAR = "MESHPROXY_BUILD_GIT_REVISION"
BUILD_STATUS_VAR = "MESHPROXY_BUILD_STATUS"
BUILD_TAG_VAR = "MESHPROXY_BUILD_TAG"
ISTIO_VERSION_VAR = "ISTIO_VERSION"


@dataclass(frozen=True)
class BuildInfo:
    """Version details of this build; serialisable with ``dataclasses.asdict``."""

    version: str = ""
    git_revision: str = ""
    python_version: str = ""
    build_status: str = ""
    git_tag: str = ""
    istio_version: str = ""

    @classmethod
    def current(cls) -> BuildInfo:
        """Build information taken from the environment of this process."""
        env = os.environ
        return cls(
            version=env.get(BUILD_VERSION_VAR, UNKNOWN),
            git_revision=env.get(BUILD_GIT_REVISION_VAR, UNKNOWN),
            python_version=platform.python_version(),
            build_status=env.get(BUILD_STATUS_VAR, UNKNOWN),
            git_tag=env.get(BUILD_TAG_VAR, UNKNOWN),
            istio_version=env.get(ISTIO_VERSION_VAR, UNKNOWN),
        )

    def __str__(self) -> str:
        return (
            f'version.BuildInfo{{Version:"{self.version}", '
            f'GitRevision:"{self.git_revision}", '
            f'PythonVersion:"{self.python_version}", '
            f'BuildStatus:"{self.build_status}", '
            f'GitTag:"{self.git_tag}", '
            f'IstioVersion:"{self.istio_version}"}}'
        )