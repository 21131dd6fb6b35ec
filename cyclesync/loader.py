"""Locate workflow definitions referenced from the command line."""

from __future__ import annotations

import sys
from importlib import import_module
from importlib.util import module_from_spec, spec_from_file_location
from pathlib import Path
from types import ModuleType
from typing import Optional

from .contracts import WorkflowDefinition, WorkflowLoadError

DEFAULT_ATTRIBUTE = "workflow"


def _load_file(path: Path) -> ModuleType:
    module_name = path.stem
    spec = spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise WorkflowLoadError(f"Cannot import workflow file {path}")
    module_obj = module_from_spec(spec)
    sys.modules[module_name] = module_obj
    spec.loader.exec_module(module_obj)
    return module_obj


def _load_module(module_name: str, base_path: Path) -> ModuleType:
    # Add base_path to sys.path temporarily for imports
    str_base_path = str(base_path)
    added = str_base_path not in sys.path
    if added:
        sys.path.insert(0, str_base_path)
    try:
        return import_module(module_name)
    except ImportError as exc:
        raise WorkflowLoadError(f"Cannot import module {module_name}: {exc}") from exc
    finally:
        if added and str_base_path in sys.path:
            sys.path.remove(str_base_path)


def load_workflow(reference: str, base_path: Optional[Path] = None) -> WorkflowDefinition:
    """Resolve ``module:attr`` or ``path/to/file.py:attr`` to a workflow.

    The attribute defaults to ``workflow``. It may be a
    :class:`WorkflowDefinition` or a zero-argument callable returning one.

    Raises:
        WorkflowLoadError: If the module, file or attribute cannot be found or
            does not describe a workflow.
    """
    target, _, attribute = reference.partition(":")
    attribute = attribute or DEFAULT_ATTRIBUTE
    search_root = (base_path or Path.cwd()).expanduser()

    if target.endswith(".py"):
        path = Path(target).expanduser()
        if not path.is_absolute():
            path = search_root / path
        if not path.is_file():
            raise WorkflowLoadError(f"Workflow file {path} does not exist")
        module_obj = _load_file(path.resolve())
    else:
        module_obj = _load_module(target, search_root.resolve())

    if not hasattr(module_obj, attribute):
        raise WorkflowLoadError(
            f"Workflow '{attribute}' not found in {module_obj.__name__}"
        )
    candidate = getattr(module_obj, attribute)
    if callable(candidate) and not isinstance(candidate, WorkflowDefinition):
        candidate = candidate()
    if not isinstance(candidate, WorkflowDefinition):
        raise WorkflowLoadError(
            f"{reference} is a {type(candidate).__name__}, not a WorkflowDefinition"
        )
    return candidate
