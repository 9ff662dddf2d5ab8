"""Configuration file discovery and initialization."""

import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# Package defaults directory
PACKAGE_DIR = Path(__file__).parent.parent
DEFAULTS_DIR = PACKAGE_DIR / "defaults"

LOCAL_DIR_NAME = ".lessonrag"

_ENV_REF = re.compile(r"\$\{([^}]+)\}")


@dataclass
class ConfigPaths:
    """Discovered configuration paths."""

    # Directories
    local_dir: Optional[Path] = None  # .lessonrag/ in current directory
    user_dir: Optional[Path] = None  # ~/.config/lessonrag/
    package_dir: Path = DEFAULTS_DIR  # Package defaults

    # Specific files (resolved from directories)
    env_file: Optional[Path] = None
    settings_file: Optional[Path] = None

    def __post_init__(self):
        """Resolve file paths from directories."""
        # Priority: local > user > package
        self.env_file = self._find_file(".env")
        self.settings_file = self._find_file("settings.yaml")

    def _find_file(self, filename: str) -> Optional[Path]:
        """Find a config file in priority order."""
        for directory in (self.local_dir, self.user_dir, self.package_dir):
            if directory:
                candidate = directory / filename
                if candidate.exists():
                    return candidate
        return None

    def settings_files(self) -> list[Path]:
        """All existing settings.yaml files, lowest priority first."""
        files = []
        for directory in (self.package_dir, self.user_dir, self.local_dir):
            if directory:
                candidate = directory / "settings.yaml"
                if candidate.exists():
                    files.append(candidate)
        return files


def get_config_paths() -> ConfigPaths:
    """
    Discover configuration paths.

    Priority order (highest to lowest):
    1. .lessonrag/ in current directory
    2. ~/.config/lessonrag/
    3. Package defaults

    Returns:
        ConfigPaths with discovered locations
    """
    local_dir = Path.cwd() / LOCAL_DIR_NAME
    local_dir = local_dir if local_dir.exists() else None

    user_dir = Path.home() / ".config" / "lessonrag"
    user_dir = user_dir if user_dir.exists() else None

    return ConfigPaths(
        local_dir=local_dir,
        user_dir=user_dir,
        package_dir=DEFAULTS_DIR,
    )


def expand_env_vars(value: str) -> str:
    """Replace every ``${VAR_NAME}`` reference with the variable's value.

    Unset variables expand to an empty string.
    """
    if not value or not isinstance(value, str):
        return value
    return _ENV_REF.sub(lambda match: os.getenv(match.group(1), ""), value)


_ENV_TEMPLATE = """\
# lessonrag local configuration
# This file contains secrets - do not commit it to git!
# Uncomment and set values if not already configured elsewhere
# (e.g., in ~/.config/lessonrag/.env or environment variables)

# Embedding provider (any OpenAI-compatible endpoint)
# LESSONRAG_API_KEY=sk-...
# LESSONRAG_API_BASE_URL=https://api.openai.com/v1
# LESSONRAG_EMBEDDING_MODEL=text-embedding-3-small
# LESSONRAG_EMBEDDING_DIMENSION=768

# Databases
# LESSONRAG_INDEX_DB=.lessonrag/embeddings.db
# LESSONRAG_LESSONS_DB=lessons.db

# Indexing defaults
# LESSONRAG_MAX_CHARS=1200
# LESSONRAG_MAX_EMBEDDINGS=200
# LESSONRAG_CONCURRENCY=2
# LESSONRAG_RETRY_ATTEMPTS=2

# Retrieval defaults
# LESSONRAG_TOP_K=5
# LESSONRAG_QUERY_RETRY_ATTEMPTS=1
"""

_SETTINGS_TEMPLATE = """\
# lessonrag settings for this project
# Environment variables (LESSONRAG_*) take precedence over these values.

api:
  key: "${LESSONRAG_API_KEY}"
  # base_url: https://api.openai.com/v1
  # timeout: 60
  # headers:
  #   X-Client: "lessonrag"

embedding:
  model: text-embedding-3-small
  dimension: 768
  # Set to false for endpoints that reject the `dimensions` parameter
  # send_dimensions: false

storage:
  index_db: .lessonrag/embeddings.db
  # lessons_db: lessons.db

indexing:
  max_chars: 1200
  max_embeddings_per_run: 200
  concurrency: 2
  retry_attempts: 2

retrieval:
  top_k: 5
  retry_attempts: 1
"""

_GITIGNORE_TEMPLATE = """\
# Ignore sensitive files
.env
*.env.local

# Local embedding index
*.db
"""


def init_local_config(target_dir: Optional[Path] = None) -> bool:
    """
    Initialize local configuration in the specified or current directory.

    Creates .lessonrag/ directory with template configuration files.

    Args:
        target_dir: Directory to initialize (default: current directory)

    Returns:
        True if successful
    """
    if target_dir is None:
        target_dir = Path.cwd()

    config_dir = target_dir / LOCAL_DIR_NAME

    if config_dir.exists():
        print(f"Configuration already exists at {config_dir}")
        print("Delete it first if you want to reinitialize.")
        return False

    print(f"Initializing lessonrag configuration in {config_dir}")

    try:
        config_dir.mkdir(parents=True)
        (config_dir / ".env").write_text(_ENV_TEMPLATE)
        (config_dir / "settings.yaml").write_text(_SETTINGS_TEMPLATE)
        (config_dir / ".gitignore").write_text(_GITIGNORE_TEMPLATE)

        print("\nCreated configuration files:")
        print(f"  {config_dir}/.env           - API key and overrides")
        print(f"  {config_dir}/settings.yaml  - Embedding, storage and run defaults")
        print("\nNext steps:")
        print(f"  1. Edit {config_dir}/.env and add your API key")
        print("  2. Run 'lessonrag index --recent' to build the index")

        return True

    except OSError as e:
        print(f"Error creating configuration: {e}")
        # Cleanup on failure
        if config_dir.exists():
            shutil.rmtree(config_dir)
        return False
