"""Newline-delimited JSON streaming responses."""

from contextlib import aclosing
from typing import AsyncIterator

from fastapi.responses import StreamingResponse
from pydantic import BaseModel

NDJSON_MEDIA_TYPE = "application/x-ndjson"


async def ndjson_lines(items: AsyncIterator[BaseModel]) -> AsyncIterator[str]:
    async with aclosing(items) as stream:
        async for item in stream:
            yield item.model_dump_json() + "\n"


def ndjson_response(items: AsyncIterator[BaseModel]) -> StreamingResponse:
    return StreamingResponse(ndjson_lines(items), media_type=NDJSON_MEDIA_TYPE)
