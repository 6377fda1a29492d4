"""Build recipe resolution: Dockerfile templates and the optional preview.yml."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from app.detect import ProjectType
from config.settings import settings

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

TEMPLATE_FILES = {
    ProjectType.static: "static.Dockerfile",
    ProjectType.spa_bundler: "spa-bundler.Dockerfile",
    ProjectType.node_backend: "node-backend.Dockerfile",
    # Unknown layouts degrade to the generic backend recipe
    ProjectType.unknown: "node-backend.Dockerfile",
}

# Name the template is copied to inside the working directory
DOCKERFILE_NAME = ".preview.Dockerfile"

# Kept out of every build context; static images serve the context as-is
DOCKERIGNORE_NAME = ".dockerignore"
DOCKERIGNORE_ENTRIES = (".git", DOCKERFILE_NAME, DOCKERIGNORE_NAME)


@dataclass
class BuildRecipe:
    project_type: ProjectType
    template: Path
    internal_port: int
    env: dict[str, str] = field(default_factory=dict)


def parse_preview_yml(workdir: Path) -> dict:
    """Read preview.yml from the repository root. Returns {} when absent or invalid."""
    yml_file = Path(workdir) / "preview.yml"
    if not yml_file.exists():
        return {}

    try:
        raw = yaml.safe_load(yml_file.read_text()) or {}
    except Exception as e:
        logger.warning(f"Failed to parse preview.yml: {e}, using defaults")
        return {}

    if not isinstance(raw, dict):
        logger.warning("preview.yml is not a mapping, using defaults")
        return {}

    config: dict = {}
    if "type" in raw:
        try:
            config["type"] = ProjectType(str(raw["type"]))
        except ValueError:
            logger.warning(f"preview.yml: unknown type {raw['type']!r}, ignoring")

    if "port" in raw:
        try:
            port = int(raw["port"])
        except (TypeError, ValueError):
            port = 0
        if 0 < port < 65536:
            config["port"] = port
        else:
            logger.warning(f"preview.yml: invalid port {raw['port']!r}, ignoring")

    if "env" in raw and isinstance(raw["env"], dict):
        config["env"] = {str(k): str(v) for k, v in raw["env"].items()}

    logger.info(f"Parsed preview.yml: {sorted(config)}")
    return config


def default_internal_port(project_type: ProjectType) -> int:
    if project_type in (ProjectType.static, ProjectType.spa_bundler):
        return settings.static_internal_port
    return settings.backend_internal_port


def resolve_recipe(workdir: Path, detected: ProjectType) -> BuildRecipe:
    """Pick the template and container port for a checkout, honouring preview.yml."""
    overrides = parse_preview_yml(workdir)
    project_type = overrides.get("type", detected)
    return BuildRecipe(
        project_type=project_type,
        template=TEMPLATES_DIR / TEMPLATE_FILES[project_type],
        internal_port=overrides.get("port", default_internal_port(project_type)),
        env=overrides.get("env", {}),
    )
