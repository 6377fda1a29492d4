"""Classify a checked-out repository to pick a build template."""

import json
import logging
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class ProjectType(str, Enum):
    static = "static"
    spa_bundler = "spa-bundler"
    node_backend = "node-backend"
    unknown = "unknown"


BUNDLER_CONFIGS = (
    "vite.config.js",
    "vite.config.ts",
    "vite.config.mjs",
    "webpack.config.js",
    "angular.json",
    "svelte.config.js",
    ".parcelrc",
)

BUNDLER_PACKAGES = {"vite", "react-scripts", "webpack", "parcel", "@angular/cli", "@vue/cli-service"}

# Server-rendered frameworks need a running node process, not static hosting.
SERVER_CONFIGS = ("next.config.js", "next.config.mjs", "next.config.ts", "nuxt.config.js", "nuxt.config.ts")


def _read_manifest(path: Path) -> dict | None:
    try:
        raw = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        logger.warning(f"Unreadable package.json at {path}: {e}")
        return None
    return raw if isinstance(raw, dict) else None


def detect_project_type(workdir: Path) -> ProjectType:
    """Inspect marker files in `workdir`. Never raises."""
    workdir = Path(workdir)

    if any((workdir / name).exists() for name in SERVER_CONFIGS):
        return ProjectType.node_backend

    if any((workdir / name).exists() for name in BUNDLER_CONFIGS):
        return ProjectType.spa_bundler

    manifest_path = workdir / "package.json"
    if manifest_path.exists():
        pkg = _read_manifest(manifest_path) or {}
        scripts = pkg.get("scripts") or {}
        deps = {}
        for key in ("dependencies", "devDependencies"):
            if isinstance(pkg.get(key), dict):
                deps.update(pkg[key])
        if "build" in scripts and BUNDLER_PACKAGES & set(deps):
            return ProjectType.spa_bundler
        return ProjectType.node_backend

    if (workdir / "index.html").exists():
        return ProjectType.static

    return ProjectType.unknown
