"""Helm controller package.

This package contains the implementation of the HelmRelease controller,
which installs, upgrades and uninstalls releases in the package engine.
"""

from .controller import HelmReleaseController, needs_upgrade, validate_release

__all__ = ["HelmReleaseController", "needs_upgrade", "validate_release"]
