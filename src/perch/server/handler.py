"""ASGI handler: translates ASGI scope/messages to perch types.

The only component that touches raw ASGI for HTTP. Converts the scope to
a typed Request, hands it to the dispatcher and sends the Response back
through ASGI send().

The dispatch runs as its own task next to a disconnect watcher. Once the
request body has been consumed, the watcher listens on ``receive()``; an
``http.disconnect`` marks the request and cancels the dispatch, which
abandons the remaining stages and releases the request's scope.
"""

import asyncio
import logging

from perch._internal.asgi import Receive, Scope, Send
from perch.errors import ClientDisconnected, HTTPError
from perch.http.request import Request
from perch.server.dispatcher import Dispatcher
from perch.server.sender import send_response

logger = logging.getLogger("perch.server")


async def _watch_disconnect(request: Request, receive: Receive) -> None:
    """Return once the client has gone away, marking the request."""
    try:
        if request.has_body:
            # The binder owns the channel until the body is read
            await request.wait_body_read()
        else:
            await request.body()
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                break
    except HTTPError:
        # Oversized body: the dispatch reports it; nothing left to watch
        return
    except ClientDisconnected:
        pass
    request.mark_disconnected()


async def handle_request(
    scope: Scope,
    receive: Receive,
    send: Send,
    *,
    dispatcher: Dispatcher,
    max_body_size: int | None = None,
) -> None:
    """Process a single HTTP request through the full pipeline."""
    if scope["type"] != "http":
        return

    request = Request.from_asgi(scope, receive, max_body_size=max_body_size)

    # Watcher first, so a client already gone never reaches the pipeline
    watcher = asyncio.create_task(_watch_disconnect(request, receive))
    task = asyncio.create_task(dispatcher.dispatch(request))
    try:
        done, _ = await asyncio.wait((task, watcher), return_when=asyncio.FIRST_COMPLETED)
        if task not in done and not request.disconnected:
            # The watcher stopped without a disconnect
            await asyncio.wait((task,))
    finally:
        watcher.cancel()
        if not task.done():
            task.cancel()
        await asyncio.wait((task, watcher))

    if not watcher.cancelled():
        # Surfaces a failing receive()
        watcher.result()

    try:
        response = None if task.cancelled() else task.result()
    except ClientDisconnected:
        response = None
    if response is None or request.disconnected:
        logger.debug("Client disconnected, dropping response: %s %s", request.method, request.path)
        return

    await send_response(response, send, head=request.method == "HEAD")
