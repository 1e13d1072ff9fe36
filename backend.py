import logging

import uvicorn

from license_server import create_app
from settings import settings

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
log = logging.getLogger("license-server")

app = create_app()


def mask_token(token: str) -> str:
    if len(token) <= 10:
        return "*" * len(token)
    return token[:6] + "..." + token[-4:]


def main() -> int:
    store = app.state.store
    log.info("Public License Server listening on http://%s:%s", settings.HOST, settings.PORT)
    log.info("Device store: %s", store.path)
    if store.generated_token:
        log.info("Generated admin token (saved in the store file): %s", store.admin_token)
    else:
        log.info("Admin token: %s", mask_token(store.admin_token))
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
    log.info("Server closed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
