"""Policy Template Renderer: Varnish VCL, daemon files and nginx patches."""
from __future__ import annotations

from .daemon import render_params, render_unit
from .nginx import (
    MARKER_END,
    MARKER_START,
    PatchError,
    has_marker_block,
    has_relocated_listen,
    insert_marker_block,
    relocate_listen,
    remove_marker_block,
    restore_listen,
)
from .vcl import (
    DEFAULT_STATIC_EXTENSIONS,
    add_include,
    build_host_condition,
    count_includes,
    is_managed_master,
    normalize_hosts,
    remove_include,
    render_master_config,
    render_site_policy,
    site_includes,
)

__all__ = [
    "DEFAULT_STATIC_EXTENSIONS",
    "MARKER_END",
    "MARKER_START",
    "PatchError",
    "add_include",
    "build_host_condition",
    "count_includes",
    "has_marker_block",
    "has_relocated_listen",
    "insert_marker_block",
    "is_managed_master",
    "normalize_hosts",
    "relocate_listen",
    "remove_include",
    "remove_marker_block",
    "render_master_config",
    "render_params",
    "render_site_policy",
    "render_unit",
    "restore_listen",
    "site_includes",
]
