"""
Configuration module for code context selection.

This module loads ``.codecontext/config.yaml``, validates it (collecting every
problem in one pass) and turns it into typed records before anything reaches
the indexing pipeline. It also holds the project presets.
"""

import os
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv

from codecontext.errors import ConfigValidationError, NotInitializedError, NoSourcesError, SourceNotFoundError
from codecontext.models import Settings, SourceConfig

logger = logging.getLogger(__name__)

CONFIG_DIR = ".codecontext"
CONFIG_FILE = "config.yaml"
INDEX_DB = "index.db"

DEFAULT_INCLUDE = ["**/*.ts", "**/*.tsx", "**/*.js", "**/*.jsx", "**/*.py", "**/*.md"]
DEFAULT_EXCLUDE = ["**/node_modules/**", "**/dist/**", "**/.git/**", "**/__pycache__/**"]

SOURCE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


@dataclass(frozen=True)
class ValidationIssue:
    path: str
    message: str
    suggestion: Optional[str] = None


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class Config:
    """
    A validated project configuration.

    Attributes:
        base_dir: Directory that source paths are relative to
        sources: Configured sources
        settings: Chunking and embedding settings
        version: Config format version
    """
    base_dir: str
    sources: tuple
    settings: Settings
    version: int = 1

    def get_source(self, source_id: str) -> SourceConfig:
        for source in self.sources:
            if source.id == source_id:
                return source
        raise SourceNotFoundError(source_id)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(raw: Dict, base_dir: str) -> ValidationResult:
    """
    Validate a raw configuration mapping.

    Args:
        raw: Mapping loaded from config.yaml
        base_dir: Directory source paths are resolved against

    Returns:
        ValidationResult holding all errors and warnings
    """
    result = ValidationResult()
    if not isinstance(raw, dict):
        result.errors.append(ValidationIssue("", "Configuration must be a mapping",
                                             "Start from default_config_yaml()"))
        return result

    if not _is_number(raw.get("version")):
        result.errors.append(ValidationIssue("version", "Version must be a number", "Set version: 1"))

    sources = raw.get("sources")
    if not isinstance(sources, list):
        result.errors.append(ValidationIssue("sources", "Sources must be a list",
                                             "Add sources: [] to your config"))
    else:
        seen_ids = set()
        for i, source in enumerate(sources):
            _validate_source(source, f"sources[{i}]", base_dir, seen_ids, result)

    settings = raw.get("settings")
    if settings is not None:
        if not isinstance(settings, dict):
            result.errors.append(ValidationIssue("settings", "Settings must be a mapping"))
        else:
            _validate_settings(settings, result)

    return result


def _validate_source(source, path: str, base_dir: str, seen_ids: set, result: ValidationResult):
    if not isinstance(source, dict):
        result.errors.append(ValidationIssue(path, "Source must be a mapping"))
        return

    source_id = source.get("id")
    if not source_id or not isinstance(source_id, str):
        result.errors.append(ValidationIssue(f"{path}.id", "Source must have a string id",
                                             'Add id: "my-source"'))
    elif source_id in seen_ids:
        result.errors.append(ValidationIssue(f"{path}.id", f'Duplicate source id "{source_id}"',
                                             "Each source needs a unique id"))
    elif not SOURCE_ID_PATTERN.match(source_id):
        result.warnings.append(ValidationIssue(
            f"{path}.id", f'Source id "{source_id}" contains special characters',
            "Use only letters, numbers, hyphens and underscores"))
    if isinstance(source_id, str) and source_id:
        seen_ids.add(source_id)

    source_path = source.get("path")
    if not source_path or not isinstance(source_path, str):
        result.errors.append(ValidationIssue(f"{path}.path", "Source must have a string path",
                                             'Add path: "./src"'))
    elif not os.path.exists(os.path.join(base_dir, source_path)):
        result.errors.append(ValidationIssue(f"{path}.path", f'Path "{source_path}" does not exist',
                                             "Check the path is relative to the project root"))

    patterns = source.get("patterns")
    if not isinstance(patterns, dict):
        result.errors.append(ValidationIssue(
            f"{path}.patterns", "Source must have patterns",
            'Add patterns: { include: ["**/*.ts"], exclude: ["**/node_modules/**"] }'))
        return

    include = patterns.get("include")
    if not isinstance(include, list) or not include:
        result.errors.append(ValidationIssue(f"{path}.patterns.include",
                                             "Include patterns must be a non-empty list",
                                             'Add include: ["**/*.ts"]'))
    elif not all(isinstance(p, str) for p in include):
        result.errors.append(ValidationIssue(f"{path}.patterns.include",
                                             "Include patterns must be strings"))

    exclude = patterns.get("exclude")
    if not isinstance(exclude, list):
        result.warnings.append(ValidationIssue(f"{path}.patterns.exclude",
                                               "Exclude patterns should be a list",
                                               'Add exclude: ["**/node_modules/**"]'))
    elif not any(isinstance(p, str) and "node_modules" in p for p in exclude):
        result.warnings.append(ValidationIssue(f"{path}.patterns.exclude",
                                               "node_modules is not excluded",
                                               'Add "**/node_modules/**" to exclude patterns'))


def _validate_settings(settings: Dict, result: ValidationResult):
    chunk_size = settings.get("chunk_size", Settings.chunk_size)
    if not _is_number(chunk_size):
        result.errors.append(ValidationIssue("settings.chunk_size", "chunk_size must be a number"))
        chunk_size = None
    elif chunk_size < 50:
        result.warnings.append(ValidationIssue("settings.chunk_size",
                                               f"chunk_size {chunk_size} is very small",
                                               "Recommended: 200-1000"))
    elif chunk_size > 2000:
        result.warnings.append(ValidationIssue("settings.chunk_size",
                                               f"chunk_size {chunk_size} is very large",
                                               "Recommended: 200-1000"))

    chunk_overlap = settings.get("chunk_overlap", Settings.chunk_overlap)
    if not _is_number(chunk_overlap):
        result.errors.append(ValidationIssue("settings.chunk_overlap", "chunk_overlap must be a number"))
    elif chunk_overlap < 0:
        result.errors.append(ValidationIssue("settings.chunk_overlap", "chunk_overlap cannot be negative"))
    elif chunk_size is not None and chunk_overlap >= chunk_size:
        result.errors.append(ValidationIssue("settings.chunk_overlap",
                                             "chunk_overlap must be smaller than chunk_size",
                                             f"Use at most {int(chunk_size) - 1}"))

    max_unit_tokens = settings.get("max_unit_tokens")
    if max_unit_tokens is not None and (not _is_number(max_unit_tokens) or max_unit_tokens <= 0):
        result.errors.append(ValidationIssue("settings.max_unit_tokens",
                                             "max_unit_tokens must be a positive number"))

    dimensions = settings.get("embedding_dimensions")
    if dimensions is not None and (not isinstance(dimensions, int) or isinstance(dimensions, bool)
                                   or dimensions <= 0):
        result.errors.append(ValidationIssue("settings.embedding_dimensions",
                                             "embedding_dimensions must be a positive integer"))

    model = settings.get("embedding_model")
    if model is not None and not isinstance(model, str):
        result.errors.append(ValidationIssue("settings.embedding_model", "embedding_model must be a string"))


def validate_budget(budget) -> List[ValidationIssue]:
    """Return the problems with a token budget (empty when it is usable)."""
    if not _is_number(budget) or int(budget) != budget:
        return [ValidationIssue("budget", "Budget must be an integer token count")]
    if budget <= 0:
        return [ValidationIssue("budget", "Budget must be positive", "Try 8000")]
    return []


def parse_config(raw: Dict, base_dir: str) -> Config:
    """
    Validate a raw mapping and convert it into a Config.

    Args:
        raw: Mapping loaded from config.yaml
        base_dir: Directory source paths are resolved against

    Returns:
        A Config instance

    Raises:
        ConfigValidationError: listing every violation found
    """
    result = validate_config(raw, base_dir)
    for warning in result.warnings:
        logger.warning("config %s: %s", warning.path, warning.message)
    if not result.valid:
        raise ConfigValidationError(result.errors, result.warnings)

    sources = []
    for source in raw["sources"]:
        patterns = source["patterns"]
        exclude = patterns.get("exclude")
        sources.append(SourceConfig(
            id=source["id"],
            path=source["path"],
            include=tuple(patterns["include"]),
            exclude=tuple(exclude) if isinstance(exclude, list) else (),
        ))

    settings_raw = raw.get("settings") or {}
    env_model = os.environ.get("CODECONTEXT_EMBEDDING_MODEL")
    settings = Settings(
        chunk_size=int(settings_raw.get("chunk_size", Settings.chunk_size)),
        chunk_overlap=int(settings_raw.get("chunk_overlap", Settings.chunk_overlap)),
        max_unit_tokens=(int(settings_raw["max_unit_tokens"])
                         if settings_raw.get("max_unit_tokens") is not None else None),
        embedding_model=settings_raw.get("embedding_model") or env_model or Settings.embedding_model,
        embedding_dimensions=int(settings_raw.get("embedding_dimensions", Settings.embedding_dimensions)),
        use_structural_parsing=bool(settings_raw.get("use_structural_parsing", True)),
    )
    return Config(base_dir=base_dir, sources=tuple(sources), settings=settings,
                  version=int(raw["version"]))


def get_config_dir(project_dir: str) -> str:
    return os.path.join(project_dir, CONFIG_DIR)


def get_db_path(project_dir: str) -> str:
    return os.path.join(get_config_dir(project_dir), INDEX_DB)


def load_environment(project_dir: Optional[str] = None):
    """Load a project-level .env (if any) and then the default one."""
    if project_dir:
        env_path = os.path.join(project_dir, ".env")
        if os.path.exists(env_path):
            load_dotenv(env_path)
    load_dotenv()


def get_api_key() -> Optional[str]:
    return os.environ.get("OPENAI_API_KEY")


def load_config(project_dir: str, require_sources: bool = False) -> Config:
    """
    Load and validate ``.codecontext/config.yaml`` for a project.

    Args:
        project_dir: Project root containing the .codecontext directory
        require_sources: Raise NoSourcesError when no source is configured

    Returns:
        A validated Config

    Raises:
        NotInitializedError: if the config file is missing
        ConfigValidationError: if the file is malformed or invalid
    """
    load_environment(project_dir)
    config_path = os.path.join(get_config_dir(project_dir), CONFIG_FILE)
    if not os.path.exists(config_path):
        raise NotInitializedError(project_dir)

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigValidationError([ValidationIssue(CONFIG_FILE, f"Invalid YAML: {e}")])

    config = parse_config(raw, project_dir)
    if require_sources and not config.sources:
        raise NoSourcesError()
    return config


def format_validation_results(result: ValidationResult) -> str:
    """Render a ValidationResult as readable text."""
    lines = []
    if result.errors:
        lines.append("Configuration errors:")
        for issue in result.errors:
            lines.append(f"  - {issue.path}: {issue.message}")
            if issue.suggestion:
                lines.append(f"    -> {issue.suggestion}")
    if result.warnings:
        if lines:
            lines.append("")
        lines.append("Warnings:")
        for issue in result.warnings:
            lines.append(f"  - {issue.path}: {issue.message}")
            if issue.suggestion:
                lines.append(f"    -> {issue.suggestion}")
    if result.valid and not result.warnings:
        lines.append("Configuration is valid")
    return "\n".join(lines)


# Presets for common project layouts
PRESETS: Dict[str, Dict] = {
    "react": {
        "name": "React / Next.js",
        "description": "Optimized for React and Next.js projects",
        "sources": [{
            "id": "app",
            "path": "./src",
            "patterns": {
                "include": ["**/*.ts", "**/*.tsx", "**/*.js", "**/*.jsx", "**/*.css"],
                "exclude": ["**/node_modules/**", "**/*.test.ts", "**/*.test.tsx", "**/*.spec.ts",
                            "**/*.spec.tsx", "**/__tests__/**", "**/__mocks__/**"],
            },
        }],
        "settings": {"chunk_size": 400, "chunk_overlap": 50},
    },
    "node": {
        "name": "Node.js / TypeScript",
        "description": "Optimized for Node.js and TypeScript projects",
        "sources": [{
            "id": "src",
            "path": "./src",
            "patterns": {
                "include": ["**/*.ts", "**/*.js", "**/*.mts", "**/*.mjs"],
                "exclude": ["**/node_modules/**", "**/*.test.ts", "**/*.spec.ts", "**/__tests__/**",
                            "**/dist/**"],
            },
        }],
        "settings": {"chunk_size": 500, "chunk_overlap": 50},
    },
    "python": {
        "name": "Python",
        "description": "Optimized for Python projects",
        "sources": [{
            "id": "src",
            "path": "./src",
            "patterns": {
                "include": ["**/*.py"],
                "exclude": ["**/__pycache__/**", "**/.venv/**", "**/venv/**", "**/.env/**",
                            "**/test_*.py", "**/*_test.py", "**/tests/**"],
            },
        }],
        "settings": {"chunk_size": 400, "chunk_overlap": 40},
    },
    "monorepo": {
        "name": "Monorepo",
        "description": "Optimized for monorepo structures (packages/*, apps/*)",
        "sources": [
            {
                "id": "packages",
                "path": "./packages",
                "patterns": {
                    "include": ["**/*.ts", "**/*.tsx", "**/*.js", "**/*.jsx"],
                    "exclude": ["**/node_modules/**", "**/dist/**", "**/build/**", "**/*.test.*",
                                "**/*.spec.*", "**/__tests__/**"],
                },
            },
            {
                "id": "apps",
                "path": "./apps",
                "patterns": {
                    "include": ["**/*.ts", "**/*.tsx", "**/*.js", "**/*.jsx"],
                    "exclude": ["**/node_modules/**", "**/dist/**", "**/build/**", "**/.next/**",
                                "**/*.test.*", "**/*.spec.*", "**/__tests__/**"],
                },
            },
        ],
        "settings": {"chunk_size": 450, "chunk_overlap": 50},
    },
    "fullstack": {
        "name": "Full Stack",
        "description": "For full-stack apps with frontend and API",
        "sources": [
            {
                "id": "frontend",
                "path": "./src",
                "patterns": {
                    "include": ["**/*.ts", "**/*.tsx", "**/*.js", "**/*.jsx", "**/*.css"],
                    "exclude": ["**/node_modules/**", "**/*.test.*", "**/*.spec.*", "**/__tests__/**"],
                },
            },
            {
                "id": "api",
                "path": "./api",
                "patterns": {
                    "include": ["**/*.ts", "**/*.js"],
                    "exclude": ["**/node_modules/**", "**/*.test.*"],
                },
            },
        ],
        "settings": {"chunk_size": 450, "chunk_overlap": 50},
    },
}


def get_preset(name: str) -> Optional[Dict]:
    return PRESETS.get(name.lower())


def get_preset_names() -> List[str]:
    return list(PRESETS.keys())


def get_preset_list() -> List[Dict[str, str]]:
    return [{"name": name, "description": preset["description"]} for name, preset in PRESETS.items()]


def preset_to_yaml(preset: Dict) -> str:
    """
    Render a preset as a config.yaml document.

    Args:
        preset: One of the PRESETS values

    Returns:
        YAML text with a short comment header
    """
    body = {
        "version": 1,
        "sources": preset["sources"],
        "settings": preset["settings"],
    }
    header = f"# codecontext configuration\n# Preset: {preset['name']}\n# {preset['description']}\n\n"
    return header + yaml.safe_dump(body, sort_keys=False, default_flow_style=False)


def default_config_yaml() -> str:
    body = {
        "version": 1,
        "sources": [],
        "settings": {
            "chunk_size": Settings.chunk_size,
            "chunk_overlap": Settings.chunk_overlap,
            "embedding_model": Settings.embedding_model,
        },
    }
    return "# codecontext configuration\n\n" + yaml.safe_dump(body, sort_keys=False, default_flow_style=False)


def init_project(project_dir: str, preset: Optional[str] = None, force: bool = False) -> str:
    """
    Create ``.codecontext/config.yaml`` in a project.

    Args:
        project_dir: Project root
        preset: Optional preset name
        force: Overwrite an existing configuration

    Returns:
        Path of the written config file
    """
    config_dir = get_config_dir(project_dir)
    config_path = os.path.join(config_dir, CONFIG_FILE)
    if os.path.exists(config_path) and not force:
        raise FileExistsError(config_path)

    if preset:
        preset_config = get_preset(preset)
        if preset_config is None:
            raise ConfigValidationError([ValidationIssue(
                "preset", f'Unknown preset "{preset}"', f"Choose one of: {', '.join(get_preset_names())}")])
        text = preset_to_yaml(preset_config)
    else:
        text = default_config_yaml()

    os.makedirs(config_dir, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        f.write(text)
    logger.info("Wrote %s", config_path)
    return config_path
