from __future__ import annotations

import ssl

import aiohttp
import certifi

from shared.constants import DOWNLOAD_CONCURRENCY, HTTP_USER_AGENT


def make_ssl_context() -> ssl.SSLContext:
    # Сертификаты из certifi, одинаково для обычной и портативной сборки
    return ssl.create_default_context(cafile=certifi.where())


def make_http_session(
    *,
    concurrency: int = DOWNLOAD_CONCURRENCY,
    user_agent: str = HTTP_USER_AGENT,
) -> aiohttp.ClientSession:
    """Сессия без HTTP-кэша для заполнения тайлов.

    Размер пула соединений равен параллельности задания: принятый в работу
    тайл не ждёт свободного сокета.
    """
    connector = aiohttp.TCPConnector(
        ssl=make_ssl_context(),
        limit=max(1, concurrency),
    )
    return aiohttp.ClientSession(
        connector=connector,
        headers={'User-Agent': user_agent},
    )
