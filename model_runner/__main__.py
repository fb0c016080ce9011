"""Run model-runner with uvicorn: ``python -m model_runner``."""

import uvicorn

from model_runner.core.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "model_runner.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        ssl_certfile=settings.tls_certificate,
        ssl_keyfile=settings.tls_private_key,
    )


if __name__ == "__main__":
    main()
