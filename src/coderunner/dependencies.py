"""Best-effort dependency resolution before a run.

Python sources are scanned for ``import X`` / ``from X import`` statements
and ``# pip: a, b`` directives; Java sources for ``// maven:
group:artifact:version`` directives.  The resulting packages are written to
a manifest (``requirements.txt`` or ``pom.xml``) inside the session and an
installer subprocess is run against it.  The manifest is removed afterwards.

Installation failures never block a run: they are logged and reported in
the returned :class:`InstallOutcome`, and execution proceeds regardless.
The installer runs with the service's own privileges and without any
per-install isolation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Sequence

from .config import Toolchain
from .errors import DependencyInstallError
from .sessions import Session
from .supervisor import terminate_process

logger = logging.getLogger("coderunner.dependencies")

STDLIB_MODULES = frozenset(sys.stdlib_module_names) | {
    "sys", "os", "math", "json", "random", "time", "datetime", "re",
    "collections", "functools", "itertools", "typing", "argparse",
    "pathlib", "string", "csv", "hashlib", "uuid", "logging",
    "__future__",
}

# Import names whose distribution is published under a different name.
PACKAGE_ALIASES = {
    "PIL": "Pillow",
    "cv2": "opencv-python",
    "sklearn": "scikit-learn",
    "yaml": "PyYAML",
    "bs4": "beautifulsoup4",
    "dateutil": "python-dateutil",
    "dotenv": "python-dotenv",
}

_IMPORT_RE = re.compile(r"^[ \t]*import[ \t]+([\w.]+(?:[ \t]*,[ \t]*[\w.]+)*)", re.MULTILINE)
_FROM_IMPORT_RE = re.compile(r"^[ \t]*from[ \t]+([\w.]+)[ \t]+import\b", re.MULTILINE)
_PIP_RE = re.compile(r"^[ \t]*#[ \t]*pip[ \t]*:[ \t]*(.+)$", re.MULTILINE)
_PIP_REQUIREMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._\-\[\],]*(?:[=<>!~]=?[A-Za-z0-9.*+!\-]+)?$")
_MAVEN_RE = re.compile(r"//[ \t]*maven[ \t]*:[ \t]*([\w.\-]+:[\w.\-]+:[\w.\-]+)")

PYTHON_MANIFEST = "requirements.txt"
JAVA_MANIFEST = "pom.xml"
JAVA_LIB_DIR = "lib"

POM_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<project xmlns="http://maven.apache.org/POM/4.0.0"
         xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"
         xsi:schemaLocation="http://maven.apache.org/POM/4.0.0 http://maven.apache.org/xsd/maven-4.0.0.xsd">
    <modelVersion>4.0.0</modelVersion>

    <groupId>com.example</groupId>
    <artifactId>java-dependencies</artifactId>
    <version>1.0-SNAPSHOT</version>

    <dependencies>
{dependencies}
    </dependencies>
</project>
"""

DEPENDENCY_TEMPLATE = """        <dependency>
            <groupId>{group}</groupId>
            <artifactId>{artifact}</artifactId>
            <version>{version}</version>
        </dependency>"""


@dataclass
class DependencyManifest:
    language: str
    packages: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.packages)


@dataclass
class InstallOutcome:
    attempted: bool
    success: bool
    packages: List[str] = field(default_factory=list)
    message: str = ""


def _unique(items: Iterable[str]) -> List[str]:
    seen = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return seen


def scan_python(source: str, local_modules: Iterable[str] = ()) -> List[str]:
    """Return the third-party packages a Python source appears to need.

    Standard-library modules and modules that exist as files in the
    session (``local_modules``) are skipped.  Explicit ``# pip:`` entries
    are always kept, verbatim.
    """
    local = set(local_modules)
    names: List[str] = []
    for match in _IMPORT_RE.finditer(source):
        names.extend(part.strip() for part in match.group(1).split(","))
    names.extend(match.group(1) for match in _FROM_IMPORT_RE.finditer(source))

    packages = []
    for name in names:
        top = name.split(".")[0]
        if not top or top in STDLIB_MODULES or top in local or top.startswith("_"):
            continue
        packages.append(PACKAGE_ALIASES.get(top, top))

    for match in _PIP_RE.finditer(source):
        for entry in match.group(1).split(","):
            entry = entry.strip()
            if not entry:
                continue
            if _PIP_REQUIREMENT_RE.match(entry):
                packages.append(entry)
            else:
                logger.warning("Ignoring malformed pip directive entry: %r", entry)
    return _unique(packages)


def scan_java(source: str) -> List[str]:
    """Return ``group:artifact:version`` coordinates from maven directives."""
    return _unique(match.group(1) for match in _MAVEN_RE.finditer(source))


def render_pom(coordinates: Sequence[str]) -> str:
    entries = []
    for coordinate in coordinates:
        group, artifact, version = coordinate.split(":")
        entries.append(DEPENDENCY_TEMPLATE.format(group=group, artifact=artifact, version=version))
    return POM_TEMPLATE.format(dependencies="\n".join(entries))


def local_module_names(directory: Path) -> List[str]:
    """Names importable from the session directory itself."""
    try:
        entries = list(directory.iterdir())
    except FileNotFoundError:
        return []
    names = []
    for entry in entries:
        if entry.is_file() and entry.suffix == ".py":
            names.append(entry.stem)
        elif entry.is_dir() and (entry / "__init__.py").exists():
            names.append(entry.name)
    return names


class DependencyResolver:
    """Derive a package list from source text and install it."""

    def __init__(
        self,
        toolchain: Toolchain,
        timeout_seconds: float = 120.0,
        enabled: bool = True,
        grace_seconds: float = 2.0,
    ) -> None:
        self.toolchain = toolchain
        self.timeout_seconds = timeout_seconds
        self.enabled = enabled
        self.grace_seconds = grace_seconds

    def manifest(self, source: str, language: str, session: Session) -> DependencyManifest:
        if language == "python":
            return DependencyManifest(language, scan_python(source, local_module_names(session.directory)))
        if language == "java":
            return DependencyManifest(language, scan_java(source))
        return DependencyManifest(language)

    async def resolve(self, source: str, language: str, session: Session) -> InstallOutcome:
        if not self.enabled:
            return InstallOutcome(attempted=False, success=True, message="Dependency installation disabled")
        manifest = self.manifest(source, language, session)
        if not manifest:
            return InstallOutcome(attempted=False, success=True, message="No dependencies to install")

        logger.info("Session %s: installing %s dependencies: %s", session.id, language, ", ".join(manifest.packages))
        try:
            try:
                if language == "python":
                    await self._install_python(manifest, session)
                else:
                    await self._install_java(manifest, session)
            except OSError as exc:
                raise DependencyInstallError(f"cannot write manifest: {exc}") from exc
        except DependencyInstallError as exc:
            # Best effort: the run goes ahead without the packages.
            logger.warning("Session %s: dependency installation failed: %s", session.id, exc.detail)
            return InstallOutcome(
                attempted=True,
                success=False,
                packages=manifest.packages,
                message=f"Failed to install dependencies: {exc.detail}",
            )
        logger.info("Session %s: installed dependencies: %s", session.id, ", ".join(manifest.packages))
        return InstallOutcome(
            attempted=True,
            success=True,
            packages=manifest.packages,
            message=f"Installed dependencies: {', '.join(manifest.packages)}",
        )

    async def _install_python(self, manifest: DependencyManifest, session: Session) -> None:
        path = session.directory / PYTHON_MANIFEST
        path.write_text("\n".join(manifest.packages) + "\n", encoding="utf-8")
        args = [self.toolchain.python, "-m", "pip", "install", "--disable-pip-version-check", "-q"]
        if sys.prefix == sys.base_prefix:
            args.append("--user")
        args.extend(["-r", str(path)])
        try:
            await self._run_installer(args, session.directory)
        finally:
            path.unlink(missing_ok=True)

    async def _install_java(self, manifest: DependencyManifest, session: Session) -> None:
        path = session.directory / JAVA_MANIFEST
        path.write_text(render_pom(manifest.packages), encoding="utf-8")
        args = [
            self.toolchain.mvn,
            "-q",
            "-B",
            "dependency:copy-dependencies",
            "-f",
            str(path),
            f"-DoutputDirectory={session.directory / JAVA_LIB_DIR}",
        ]
        try:
            await self._run_installer(args, session.directory)
        finally:
            path.unlink(missing_ok=True)

    async def _run_installer(self, args: Sequence[str], cwd: Path) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=os.name == "posix",
            )
        except OSError as exc:
            raise DependencyInstallError(f"installer unavailable: {exc}") from exc
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            await terminate_process(process, self.grace_seconds)
            raise DependencyInstallError(f"installer timed out after {self.timeout_seconds:g} seconds")
        except asyncio.CancelledError:
            await terminate_process(process, self.grace_seconds)
            raise
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[-2000:]
            raise DependencyInstallError(detail or f"installer exited with code {process.returncode}")
