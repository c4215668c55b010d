"""Run the API with uvicorn: python -m waxhands_api (or the waxhands-api script)."""

import os

import uvicorn

from waxhands_api.config.env import is_production_env


def main() -> None:
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(
        "waxhands_api.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=port,
        reload=not is_production_env(),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
