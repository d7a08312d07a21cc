"""Run the API with uvicorn using the configured bind address."""
import uvicorn

from .config import settings


def main() -> None:
    uvicorn.run(
        "devicewatch.main:app",
        host=settings.WEB_HOST,
        port=settings.WEB_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
