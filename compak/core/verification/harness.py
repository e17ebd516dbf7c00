"""
Verification harness, run in a separate process by the verification runner

    python -X module_path=<path> [-X library_path=<path>] [-X NAME=value ...]
           -m compak.core.verification.harness <descriptor>

The descriptor is a YAML file naming the component entry point:

    entrypoint: "my_component.annotator:Annotator"
    parameters:
      language: en

A class entry point is instantiated. The resulting object's initialize()
method is then called with the parameters if it has one, otherwise a plain
callable entry point is called with them. Exit status 0 means the component
initialized; -1 means it did not, with the reason on stderr.
"""

import importlib
import inspect
import os
import sys
import traceback
from pathlib import Path

import yaml

MAX_MEMORY_OPTION = "max_memory"
MODULE_PATH_OPTION = "module_path"
LIBRARY_PATH_OPTION = "library_path"

RESERVED_OPTIONS = (MAX_MEMORY_OPTION, MODULE_PATH_OPTION, LIBRARY_PATH_OPTION)

_UNITS = {"K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}


def parse_memory_limit(value: str) -> int:
    value = value.strip().upper()
    if value[-1:] in _UNITS:
        return int(value[:-1]) * _UNITS[value[-1]]
    return int(value)


def apply_memory_limit(value: str) -> None:
    try:
        import resource
    except ImportError:
        # no rlimits on Windows
        return
    limit = parse_memory_limit(value)
    soft, hard = resource.getrlimit(resource.RLIMIT_AS)
    if hard != resource.RLIM_INFINITY and hard < limit:
        limit = hard
    if soft == resource.RLIM_INFINITY or soft > limit:
        resource.setrlimit(resource.RLIMIT_AS, (limit, hard))


def apply_options(options) -> None:
    """Apply -X options: memory limit, search paths and environment variables"""
    max_memory = options.get(MAX_MEMORY_OPTION)
    if isinstance(max_memory, str) and max_memory:
        try:
            apply_memory_limit(max_memory)
        except (ValueError, OSError) as e:
            print(f"[harness] memory limit {max_memory} not applied: {e}", file=sys.stderr)

    module_path = options.get(MODULE_PATH_OPTION)
    if isinstance(module_path, str):
        entries = [entry for entry in module_path.split(os.pathsep) if entry]
        sys.path[0:0] = [entry for entry in entries if entry not in sys.path]

    library_path = options.get(LIBRARY_PATH_OPTION)
    if isinstance(library_path, str) and library_path:
        os.environ["PATH"] = os.pathsep.join(filter(None, (library_path, os.environ.get("PATH"))))

    for name, value in options.items():
        if name in RESERVED_OPTIONS or not isinstance(value, str):
            continue
        os.environ.setdefault(name, value)


def load_entrypoint(descriptor_path: Path):
    """
    Import the object named by the descriptor's entrypoint

    Raises:
        ValueError: If the descriptor has no usable entrypoint
        ImportError, AttributeError: If the entrypoint cannot be resolved
    """
    data = yaml.safe_load(Path(descriptor_path).read_text(encoding="utf-8"))
    if not isinstance(data, dict) or not data.get("entrypoint"):
        raise ValueError(f"No entrypoint in descriptor {descriptor_path}")

    module_name, _, attr_path = str(data["entrypoint"]).partition(":")
    target = importlib.import_module(module_name)
    for attr in filter(None, attr_path.split(".")):
        target = getattr(target, attr)
    return target, dict(data.get("parameters") or {})


def initialize_component(target, parameters):
    if inspect.isclass(target):
        target = target()
    initialize = getattr(target, "initialize", None)
    if callable(initialize):
        initialize(**parameters)
    elif callable(target) and not inspect.ismodule(target):
        target(**parameters)
    return target


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        print("usage: python -m compak.core.verification.harness <descriptor>", file=sys.stderr)
        return -1

    try:
        apply_options(getattr(sys, "_xoptions", {}))
        target, parameters = load_entrypoint(Path(argv[0]))
        initialize_component(target, parameters)
    except Exception:
        traceback.print_exc()
        return -1

    print(f"[harness] {argv[0]} initialized", file=sys.stdout)
    return 0


if __name__ == "__main__":
    sys.exit(main())
