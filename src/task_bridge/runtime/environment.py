from __future__ import annotations
import hashlib
import os
import shutil
import subprocess
import sys
import venv
from dataclasses import dataclass
from enum import StrEnum
from logging import getLogger
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union, TYPE_CHECKING

from task_bridge.runtime.errors import WorkerEnvironmentError

if TYPE_CHECKING:
    from task_bridge.runtime.config import ChannelConfig
    from task_bridge.runtime.service import Service


logger = getLogger(__name__)

MIN_PYTHON = (3, 11)
WORKER_MODULE = "task_bridge.worker_runtime"
# the worker bridge imports these in the worker environment
WORKER_REQUIREMENTS = ("numpy", "pyzmq")
MANIFEST_MARKER = ".task-bridge-manifest"

# src/ (or site-packages/) that holds the task_bridge package
_SOURCE_ROOT = Path(__file__).resolve().parents[2]


class EnvironmentKind(StrEnum):
    System = "system"
    Executable = "executable"
    Virtualenv = "virtualenv"
    Manifest = "manifest"


@dataclass(frozen=True)
class EnvironmentSpec:
    """
    再現可能な環境: pip requirements manifest から prefix に venv を作る
    """

    manifest: Path
    prefix: Path

    def digest(self) -> str:
        try:
            content = Path(self.manifest).read_bytes()
        except OSError as e:
            raise WorkerEnvironmentError(
                f"cannot read manifest {self.manifest}: {e}"
            ) from e
        return hashlib.sha256(content).hexdigest()


@dataclass(frozen=True)
class Environment:
    executable: str
    base: str
    kind: EnvironmentKind
    env_vars: Tuple[Tuple[str, str], ...] = ()

    def command(self, *args: str) -> List[str]:
        return [self.executable, "-m", WORKER_MODULE, *args]

    def process_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        paths = [str(_SOURCE_ROOT)]
        if env.get("PYTHONPATH"):
            paths.append(env["PYTHONPATH"])
        env["PYTHONPATH"] = os.pathsep.join(paths)
        env["PYTHONUNBUFFERED"] = "1"
        env.update(dict(self.env_vars))
        return env

    def python(self, config: Optional["ChannelConfig"] = None) -> "Service":
        from task_bridge.runtime.service import Service

        return Service(self, config=config)


def _venv_python(prefix: Path) -> Path:
    if os.name == "nt":
        return prefix / "Scripts" / "python.exe"
    return prefix / "bin" / "python"


def _python_version(executable: str) -> Tuple[int, int]:
    try:
        proc = subprocess.run(
            [executable, "-c", "import sys; print('%d.%d' % sys.version_info[:2])"],
            capture_output=True,
            text=True,
            timeout=30,
            check=True,
        )
        major, minor = proc.stdout.strip().split(".")
        return int(major), int(minor)
    except (OSError, subprocess.SubprocessError, ValueError) as e:
        raise WorkerEnvironmentError(
            f"cannot query interpreter version of {executable}: {e}"
        ) from e


def _checked(executable: Path, kind: EnvironmentKind, base: Path) -> Environment:
    if not executable.is_file() or not os.access(executable, os.X_OK):
        raise WorkerEnvironmentError(f"not an executable interpreter: {executable}")
    version = _python_version(str(executable))
    if version < MIN_PYTHON:
        raise WorkerEnvironmentError(
            f"{executable} is Python {version[0]}.{version[1]}, "
            f"need {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+"
        )
    return Environment(executable=str(executable), base=str(base), kind=kind)


def system() -> Environment:
    if not sys.executable:
        raise WorkerEnvironmentError("current interpreter path is unknown")
    return Environment(
        executable=sys.executable, base=sys.prefix, kind=EnvironmentKind.System
    )


def resolve(spec: Union[None, str, os.PathLike, EnvironmentSpec] = None) -> Environment:
    """
    spec:
      - None / "system": 現在のインタプリタ
      - interpreter path, or command name on PATH
      - virtualenv directory
      - EnvironmentSpec: build() 済みの manifest 環境
    """
    if spec is None or spec == "system":
        return system()

    if isinstance(spec, EnvironmentSpec):
        prefix = Path(spec.prefix).expanduser()
        marker = prefix / MANIFEST_MARKER
        try:
            built = marker.read_text("utf-8").strip()
        except OSError:
            built = ""
        if built != spec.digest():
            raise WorkerEnvironmentError(
                f"environment at {prefix} is not built from {spec.manifest}; "
                "call build() first"
            )
        return _checked(_venv_python(prefix), EnvironmentKind.Manifest, prefix)

    path = Path(spec).expanduser()
    if path.is_dir():
        return _checked(_venv_python(path), EnvironmentKind.Virtualenv, path)
    if path.is_file():
        return _checked(path, EnvironmentKind.Executable, path.parent)
    found = shutil.which(str(spec))
    if found:
        return _checked(Path(found), EnvironmentKind.Executable, Path(found).parent)
    raise WorkerEnvironmentError(f"worker runtime not found: {spec}")


def build(spec: EnvironmentSpec) -> Environment:
    """Create (or reuse) the virtualenv described by spec."""
    prefix = Path(spec.prefix).expanduser()
    digest = spec.digest()
    try:
        return resolve(spec)
    except WorkerEnvironmentError:
        pass

    logger.info("building worker environment at %s from %s", prefix, spec.manifest)
    try:
        venv.EnvBuilder(with_pip=True, clear=True).create(prefix)
        subprocess.run(
            [
                str(_venv_python(prefix)),
                "-m",
                "pip",
                "install",
                "--disable-pip-version-check",
                "-r",
                str(spec.manifest),
                *WORKER_REQUIREMENTS,
            ],
            check=True,
        )
        (prefix / MANIFEST_MARKER).write_text(digest, "utf-8")
    except (OSError, subprocess.CalledProcessError) as e:
        raise WorkerEnvironmentError(f"failed to build environment at {prefix}: {e}") from e
    return resolve(spec)
