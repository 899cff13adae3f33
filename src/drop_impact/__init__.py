"""
Droplet impact simulator package.

Kept lightweight so that `import drop_impact` and `drop-impact --help`
work without building any bath operator.
"""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("drop-impact-simulator")
except PackageNotFoundError:  # during editable installs
    __version__ = "0.0.0"

__all__ = ["__version__"]
