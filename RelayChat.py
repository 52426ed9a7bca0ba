from __future__ import annotations

import os
from pathlib import Path

import uvicorn


def _prepare_paths() -> Path:
    app_dir = Path(__file__).resolve().parent
    # relative paths (data/, .env) resolve against the project root
    os.chdir(app_dir)
    return app_dir


def _env(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value not in (None, "") else default


def main() -> None:
    _prepare_paths()

    os.environ.setdefault("DB_URL", "sqlite:///data/app.db")

    host = _env("APP_HOST", "127.0.0.1")
    port_str = _env("APP_PORT", "8000")
    try:
        port = int(port_str)
    except ValueError:
        port = 8000

    # Import after cwd is prepared so settings pick up the local .env
    from apps.api.main import app  # noqa: WPS433

    # single process: the generation registry lives in memory
    uvicorn.run(app, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
