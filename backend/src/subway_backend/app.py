"""
Subway chat backend.

Creates one in-memory project and serves it over the toolkit's HTTP router.

LLM backends (BACKEND must be set explicitly, there is no default):
    anthropic  requires ANTHROPIC_API_KEY (env var or /secrets/ANTHROPIC_API_KEY file)

Usage:
    BACKEND=anthropic python -m subway_backend.app

    Override the model, project name or port at runtime:
        MODEL=claude-3-5-haiku-latest BACKEND=anthropic python -m subway_backend.app
        PROJECT_NAME="Trip planning" PORT=8080 BACKEND=anthropic python -m subway_backend.app
"""

import asyncio
import os
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from loguru import logger

from subway_toolkit.api.routes import build_router
from subway_toolkit.conversation_database.controller import SubwayController
from subway_toolkit.conversation_database.in_memory import (
    InMemoryBranchDatabase,
    InMemoryNodeDatabase,
    InMemoryProjectDatabase,
)
from subway_toolkit.llms.anthropic import AnthropicLLM
from subway_toolkit.llms.base import LLM

DEFAULT_PROJECT_NAME = "Subway Chat"
DEFAULT_PORT = 8000


def _get_secret(name: str) -> str:
    """Load a secret from a mounted secret file or an environment variable.

    Checks in order:
    1. /secrets/<name>
    2. <name> environment variable

    Raises ValueError if neither is available.
    """
    secret_file = Path(f"/secrets/{name}")
    if secret_file.exists():
        return secret_file.read_text().strip()
    key = os.environ.get(name, "")
    if not key:
        raise ValueError(
            f"{name} not found. Either:\n"
            f"  - Mount it as a secret file at /secrets/{name}, or\n"
            f"  - Set the {name} environment variable."
        )
    return key


def build_llm(backend: str, model_name: str | None = None, temperature: float = 0.3) -> LLM:
    """Return the LLM for 'backend'. The key is loaded from /secrets/ANTHROPIC_API_KEY or the env var."""
    backend = backend.lower().strip()
    match backend:
        case "anthropic":
            name = model_name or "claude-3-5-sonnet-latest"
            logger.info(f"LLM backend: Anthropic ({name})")
            return AnthropicLLM(
                model_name=name,
                api_key=_get_secret("ANTHROPIC_API_KEY"),
                temperature=temperature,
            )
        case _:
            raise ValueError(f"Unsupported backend {backend!r}. Choose 'anthropic'.")


async def build_app(llm: LLM, project_name: str = DEFAULT_PROJECT_NAME) -> FastAPI:
    controller = await SubwayController.create_project(
        project_name,
        InMemoryProjectDatabase(),
        InMemoryBranchDatabase(),
        InMemoryNodeDatabase(),
        llm,
    )
    app = FastAPI(title=project_name)
    app.state.controller = controller
    app.include_router(build_router(controller))
    return app


def main() -> None:
    backend = os.environ.get("BACKEND", "")
    if not backend:
        raise ValueError("BACKEND must be set explicitly, e.g. BACKEND=anthropic")
    llm = build_llm(backend, os.environ.get("MODEL") or None)
    app = asyncio.run(build_app(llm, os.environ.get("PROJECT_NAME", DEFAULT_PROJECT_NAME)))
    uvicorn.run(app, host=os.environ.get("HOST", "127.0.0.1"), port=int(os.environ.get("PORT", DEFAULT_PORT)))


if __name__ == "__main__":
    main()
