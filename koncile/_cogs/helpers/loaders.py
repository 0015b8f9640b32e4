"""
Loading the user's code, so that its decorators register the controllers.

Both ways of the Python CLI are supported: the files (``koncile run file.py``)
and the importable modules (``koncile run -m pkg.mod``), loaded in the given order.
"""
import importlib
import importlib.util
import os.path
import sys
from collections.abc import Iterable


def preload(
        paths: Iterable[str],
        modules: Iterable[str],
) -> None:
    for idx, path in enumerate(paths):
        # The file's siblings are importable from it, as with `python file.py`.
        sys.path.insert(0, os.path.abspath(os.path.dirname(path)))
        name = f'__koncile_script_{idx}__{path}'
        spec = importlib.util.spec_from_file_location(name, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Failed loading {path}: no module or loader.")
        module = importlib.util.module_from_spec(spec)
        sys.modules[name] = module
        spec.loader.exec_module(module)

    for name in modules:
        importlib.import_module(name)
