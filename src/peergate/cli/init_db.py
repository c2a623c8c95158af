import asyncio

from peergate.db import create_schema, get_engine
from peergate.observability import configure_logging
from peergate.settings import get_settings


async def init_db() -> None:
    engine = get_engine()
    try:
        await create_schema(engine)
    finally:
        await engine.dispose()


def main() -> None:
    configure_logging(get_settings().log_level)
    asyncio.run(init_db())


if __name__ == "__main__":
    main()
