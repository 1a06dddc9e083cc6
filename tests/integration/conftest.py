# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

import pytest
from aiohttp import web

from cloud_signers import URI, CloudRequest, Fields


@dataclass
class StorageServer:
    """A minimal object store that checks every request's authorization."""

    base_url: str = ""
    verify: Callable[[CloudRequest], bool] = lambda request: True
    objects: dict[str, bytes] = field(default_factory=dict)
    received: list[CloudRequest] = field(default_factory=list)

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.read()
        cloud_request = CloudRequest(
            method=request.method,
            destination=URI.from_string(str(request.url)),
            fields=Fields.from_pairs(request.headers.items()),
            body=body or None,
        )
        self.received.append(cloud_request)
        if not self.verify(cloud_request):
            return web.Response(status=403, text="signature mismatch")

        key = request.path
        if request.method == "PUT":
            self.objects[key] = body
            return web.Response(status=201)
        if request.method == "GET" and key in self.objects:
            return web.Response(body=self.objects[key])
        return web.Response(status=404)


@pytest.fixture
async def storage_server() -> AsyncIterator[StorageServer]:
    server = StorageServer()
    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", server.handle)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    host, port = runner.addresses[0][:2]
    server.base_url = f"http://{host}:{port}"
    yield server
    await runner.cleanup()
