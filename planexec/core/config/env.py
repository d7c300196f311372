from pathlib import Path

from dotenv import load_dotenv


def load_env_from_path(env_file_path: str | None, project_root: Path | None = None) -> None:
    """Load a .env file relative to the project root. Real environment variables win."""
    if not env_file_path:
        return
    path = (project_root or Path.cwd()) / env_file_path
    if path.exists():
        load_dotenv(path, override=False)
