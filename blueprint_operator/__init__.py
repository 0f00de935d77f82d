"""Reconcilers for Blueprint, Addon, Manifest and Installation resources over an in-memory store."""

__version__ = "0.1.0"

__all__ = [
    "types",
    "metrics",
    "objects",
    "blueprint_controller",
    "addon_controller",
    "installation_controller",
    "manifest_objects",
    "manifest_controller",
]