"""
release-local renders charts into manifests and manages the lifecycle of the
releases installed from them.

The main entry point is `release_local.action.ReleaseManager`, which combines
the chart loader, the dependency resolver, the template renderer, the hook
scheduler, a cluster client, and a release store.
"""

__all__ = [
    "action",
    "chart",
    "cluster",
    "config",
    "context",
    "dependency",
    "exceptions",
    "hooks",
    "manifest",
    "resource_diff",
    "store",
    "template",
    "values",
    "version",
]
