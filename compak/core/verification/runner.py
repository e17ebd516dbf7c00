"""
Out-of-process verification of an installed component

The runner launches a Python interpreter on the verification harness module
with the composed environment of the installed package and its delegates:

    python -X max_memory=512M -X module_path=<path> [-X library_path=<path>]
           [-X key=value ...] -m <harness> <descriptor>

Working directory is the installed package root. Only the child's stderr is
captured; it becomes the message of a failed TestStatus.

Exit status bands (after normalization):
    0         success
    negative  failure (sys.exit(-1))
    other     cancelled (any other exit status, killed by a signal)
"""

import logging
import os
import subprocess
import sys
import traceback
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from compak.core.config import InstallerConfig
from compak.core.packages.environment import build_network_params, join_paths
from compak.core.packages.exceptions import LauncherNotFoundError, VerificationError
from compak.core.packages.models import (
    LD_LIBRARY_PATH_VAR,
    LIBRARY_PATH_VAR,
    MODULE_PATH_VAR,
    TestStatus,
)

logger = logging.getLogger(__name__)

# -X option names read by the harness
MAX_MEMORY_OPTION = "max_memory"
MODULE_PATH_OPTION = "module_path"
LIBRARY_PATH_OPTION = "library_path"

# Interpreter locations tried under sys.prefix and sys.base_prefix
LAUNCHER_CANDIDATES = (
    "bin/python3",
    "bin/python",
    "python.exe",
    "Scripts/python.exe",
)


class RunnerState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


def default_framework_path() -> str:
    """Directory that contains the compak package"""
    return str(Path(__file__).resolve().parents[3])


def find_launcher(config: Optional[InstallerConfig] = None) -> Path:
    """
    Locate the interpreter used to run the harness

    Raises:
        LauncherNotFoundError: If no usable interpreter exists
    """
    if config is not None and config.python_executable is not None:
        configured = Path(config.python_executable)
        if configured.is_file():
            return configured.absolute()
        raise LauncherNotFoundError(f"Configured interpreter not found: {configured}")

    if sys.executable and Path(sys.executable).is_file():
        return Path(sys.executable)

    tried = []
    for prefix in dict.fromkeys((sys.prefix, sys.base_prefix)):
        for candidate in LAUNCHER_CANDIDATES:
            path = Path(prefix) / candidate
            if path.is_file():
                return path.absolute()
            tried.append(str(path))

    raise LauncherNotFoundError(f"No Python interpreter found (tried: {', '.join(tried)})")


def normalize_return_code(code: int, os_name: Optional[str] = None) -> int:
    """
    Map a child exit status onto the TestStatus bands

    The harness reports failure with sys.exit(-1). POSIX truncates that to 255
    and Windows to 4294967295; both read back as -1. Other exit statuses are
    kept as they are. subprocess reports a child killed by signal N as -N;
    that becomes 128 + N, the shell convention, and so counts as cancelled.
    """
    os_name = os_name or os.name
    if os_name == "nt":
        return -1 if code == 2 ** 32 - 1 else code
    if code == 255:
        return -1
    if code < 0:
        return 128 - code
    return code


def build_command(
    launcher: Path,
    module_path: str,
    library_path: str,
    descriptor_path: str,
    harness_module: str,
    max_memory: str = "512M",
    framework_path: Optional[str] = None,
    network_params: Sequence[str] = (),
    extra_vars: Optional[Mapping[str, str]] = None
) -> List[str]:
    """
    Argument vector of one verification run

    extra_vars are the locally declared variables that were not merged into an
    inherited variable; each becomes a '-X NAME=value' option.
    """
    command = [str(launcher), "-X", f"{MAX_MEMORY_OPTION}={max_memory}"]
    command.extend(["-X", f"{MODULE_PATH_OPTION}={join_paths(module_path, framework_path)}"])
    if library_path:
        command.extend(["-X", f"{LIBRARY_PATH_OPTION}={library_path}"])
    for param in network_params:
        command.extend(["-X", param])
    for name, value in (extra_vars or {}).items():
        if value:
            command.extend(["-X", f"{name}={value}"])
    command.extend(["-m", harness_module, descriptor_path])
    return command


def _find_key(env: Mapping[str, str], name: str) -> Optional[str]:
    for key in env:
        if key.lower() == name.lower():
            return key
    return None


def build_environment(
    local_vars: Mapping[str, str],
    base_env: Optional[Mapping[str, str]] = None
) -> Tuple[Dict[str, str], Dict[str, str]]:
    """
    Environment block for the child process

    Starts from the inherited environment. PYTHONPATH, PATH and LD_LIBRARY_PATH
    values declared locally are prepended to an inherited variable of the same
    name; those merged names are dropped from the local table. Every remaining
    local variable is added to the block as is.

    Returns:
        (environment block, local variables that were not merged)
    """
    env = {key: value for key, value in (os.environ if base_env is None else base_env).items() if value}
    remaining = {name: value for name, value in local_vars.items() if value}

    for name in (MODULE_PATH_VAR, LIBRARY_PATH_VAR, LD_LIBRARY_PATH_VAR):
        local_value = remaining.get(name)
        if not local_value:
            continue
        existing = _find_key(env, name)
        if existing is not None:
            env[existing] = join_paths(local_value, env[existing])
            del remaining[name]

    env.update(remaining)
    return env, remaining


class VerificationRunner:
    """Runs one verification command and records its state"""

    def __init__(self, command: Sequence[str], env: Mapping[str, str], work_dir: Path):
        self.command = list(command)
        self.env = dict(env)
        self.work_dir = Path(work_dir)
        self.state = RunnerState.NOT_STARTED

    def run(self) -> TestStatus:
        """
        Start the child, drain its stderr and wait for it to exit

        Raises:
            OSError: If the process cannot be started
        """
        logger.debug(f"Verification command: {self.command}")
        logger.debug(f"Verification working dir: {self.work_dir}")

        self.state = RunnerState.RUNNING
        try:
            process = subprocess.Popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                env=self.env,
                cwd=str(self.work_dir),
                text=True,
                errors="replace",
            )
        except OSError:
            self.state = RunnerState.FAILED
            raise

        with process:
            message = process.stderr.read()
            while True:
                try:
                    return_code = process.wait()
                    break
                except InterruptedError:
                    continue

        status = TestStatus(return_code=normalize_return_code(return_code), message=message or "")
        if status.succeeded:
            self.state = RunnerState.SUCCEEDED
        elif status.failed:
            self.state = RunnerState.FAILED
        else:
            self.state = RunnerState.CANCELLED
        logger.info(f"Verification process exited with code {status.return_code}")
        return status


def run(command: Sequence[str], env: Mapping[str, str], work_dir: Path) -> TestStatus:
    return VerificationRunner(command, env, work_dir).run()


def verify_installation(
    controller,
    framework_path: Optional[str] = None,
    config: Optional[InstallerConfig] = None
) -> TestStatus:
    """
    Verify an installed component with its delegates

    Args:
        controller: Object with a 'manifest' attribute and the aggregate
            build_component_module_path(), build_component_library_path() and
            build_environment_table() methods (an InstallationController)
        framework_path: Module path that provides the harness; defaults to
            config.framework_home, then to the directory holding compak
        config: Installer configuration

    Returns:
        TestStatus; any error gives return_code -1 with the traceback as message
    """
    config = config or InstallerConfig()
    try:
        manifest = controller.manifest
        if manifest is None:
            raise VerificationError("null installation manifest")
        main_root = manifest.main_component_root
        if main_root is None:
            raise VerificationError("main root directory not specified")
        descriptor_path = manifest.main_component_desc
        if descriptor_path is None:
            raise VerificationError("main descriptor path not specified")

        if framework_path is None:
            framework_path = str(config.framework_home) if config.framework_home else default_framework_path()

        module_path = controller.build_component_module_path() or ""
        library_path = controller.build_component_library_path() or ""
        local_vars = dict(controller.build_environment_table() or {})

        local_vars[MODULE_PATH_VAR] = join_paths(module_path, framework_path)
        if library_path:
            local_vars[LIBRARY_PATH_VAR] = library_path
            local_vars[LD_LIBRARY_PATH_VAR] = library_path

        env, extra_vars = build_environment(local_vars)
        network_params = build_network_params(manifest) if manifest.is_network_service else []

        command = build_command(
            find_launcher(config),
            module_path,
            library_path,
            descriptor_path,
            config.verification_harness,
            max_memory=config.max_memory,
            framework_path=framework_path,
            network_params=network_params,
            extra_vars=extra_vars,
        )
        return run(command, env, Path(main_root))

    except Exception:
        logger.exception("Verification could not be run")
        return TestStatus(return_code=-1, message=traceback.format_exc())
