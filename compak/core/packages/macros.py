"""Path macros understood in manifests and in conf/ and desc/ files

A package refers to locations that are unknown until installation with
macros:

    $main_root        absolute root of the package itself
    $main_root_url    file:// URL of that root
    $main_root_rel    root relative to the file containing the macro
    $<id>$root        absolute root of delegate <id>
    $<id>$root_url    file:// URL of that root
    $<id>$root_rel    delegate root relative to the file containing the macro

Longer forms are always substituted before the plain form that prefixes them.
"""

import os
from pathlib import Path
from typing import Mapping, Optional

MAIN_ROOT = "$main_root"
MAIN_ROOT_URL = "$main_root_url"
MAIN_ROOT_REL = "$main_root_rel"

COMP_ROOT_PREFIX = "$"
COMP_ROOT_SUFFIX = "$root"
COMP_ROOT_URL_SUFFIX = "$root_url"
COMP_ROOT_REL_SUFFIX = "$root_rel"


def normalize_path(path) -> str:
    """Path string with forward slashes; relative paths stay relative"""
    return str(path).replace("\\", "/")


def path_to_file_url(path) -> str:
    return Path(path).absolute().as_uri()


def delegate_root_macro(component_id: str, suffix: str = COMP_ROOT_SUFFIX) -> str:
    return f"{COMP_ROOT_PREFIX}{component_id}{suffix}"


def relative_path(from_dir, to_path) -> Optional[str]:
    try:
        return normalize_path(os.path.relpath(to_path, from_dir))
    except ValueError:
        # different drives on Windows
        return None


def substitute_main_root(text: str, main_root: str, base_dir=None) -> str:
    result = text.replace(MAIN_ROOT_URL, path_to_file_url(main_root))
    if MAIN_ROOT_REL in result:
        rel = relative_path(base_dir, main_root) if base_dir is not None else "."
        if rel is not None:
            result = result.replace(MAIN_ROOT_REL, rel)
    return result.replace(MAIN_ROOT, normalize_path(main_root))


def substitute_delegate_roots(
    text: str,
    roots: Mapping[str, str],
    base_dir=None
) -> str:
    result = text
    for component_id, root in roots.items():
        if root is None:
            continue
        result = result.replace(
            delegate_root_macro(component_id, COMP_ROOT_URL_SUFFIX),
            path_to_file_url(root)
        )
        rel_macro = delegate_root_macro(component_id, COMP_ROOT_REL_SUFFIX)
        if base_dir is not None and rel_macro in result:
            rel = relative_path(base_dir, root)
            if rel is not None:
                result = result.replace(rel_macro, rel)
        result = result.replace(
            delegate_root_macro(component_id, COMP_ROOT_SUFFIX),
            normalize_path(root)
        )
    return result


def substitute_all(
    text: str,
    main_root: str,
    roots: Mapping[str, str],
    base_dir=None
) -> str:
    """Substitute main-root macros, then every delegate-root macro"""
    result = substitute_main_root(text, main_root, base_dir)
    return substitute_delegate_roots(result, roots, base_dir)
