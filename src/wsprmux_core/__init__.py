"""wsprmux_core: shared primitives for the wsprmux spot aggregator.

Hosts configuration, configuration layering, cycle/time helpers and the
command-line entry point. Expose a single runtime version value
(``__version__``) so the uploader and CLI report the same version.
"""

from importlib import metadata as _importlib_metadata
from pathlib import Path as _Path

_pkg_path = _Path(__file__).resolve()
_in_site = ("site-packages" in str(_pkg_path)) or ("dist-packages" in str(_pkg_path))


def _version_from_pyproject() -> str:
    try:
        import sys as _sys

        if _sys.version_info >= (3, 11):
            import tomllib as _toml
        else:  # pragma: no cover
            import tomli as _toml  # type: ignore
        _root = _pkg_path.parents[2]
        _pyproj = _root / "pyproject.toml"
        if _pyproj.exists():
            with _pyproj.open("rb") as _f:
                _data = _toml.load(_f)
            return _data.get("project", {}).get("version", "0.0.0")
    except (OSError, ValueError):
        pass
    return "0.0.0"


if not _in_site:
    __version__ = _version_from_pyproject()
else:
    try:
        __version__ = _importlib_metadata.version("wsprmux")
    except _importlib_metadata.PackageNotFoundError:
        __version__ = _version_from_pyproject()

__all__ = ["__version__"]
