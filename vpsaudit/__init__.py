"""VPS Audit, a Linux Server Security Auditor & Guided Hardener"""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("vpsaudit")
except PackageNotFoundError:
    __version__ = "dev"

__author__ = "VPS Audit"
