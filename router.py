"""Gateway that pins join requests to the replica chosen by /where.

Join-class requests go through two phases: a side-call to any pool member's
/where, then the original request is forwarded to the returned host:port.
Everything else is forwarded to a random pool member.
"""
import argparse
import asyncio
import logging
import random
import re
import socket
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse

from settings import RouterSettings, split_list

logger = logging.getLogger(__name__)

HOSTPORT_RE = re.compile(r'"hostport"\s*:\s*"([^"]+)"')

HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-connection",
    "transfer-encoding",
    "upgrade",
    "te",
    "trailer",
}

# Request bodies pass through untouched; httpx recomputes the length and the
# host comes from the upstream URL or the rewritten authority.
REQUEST_DROP = HOP_BY_HOP | {"host", "content-length"}

# httpx has already decoded the response body.
RESPONSE_DROP = HOP_BY_HOP | {"content-length", "content-encoding"}

METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class GatewayError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def extract_hostport(body: Optional[str]) -> Optional[str]:
    """Pull the "hostport" string value out of a /where response body.

    This is a targeted field match, not a JSON parse: any body containing
    "hostport": "<value>" works. Returns None when there is no match.
    """
    if not body:
        return None
    match = HOSTPORT_RE.search(body)
    return match.group(1) if match else None


def split_hostport(hostport: str) -> Tuple[str, int]:
    host, sep, port = hostport.rpartition(":")
    if not sep or not port.isdigit():
        return hostport, 80
    return host.strip("[]"), int(port)


async def system_resolve(host: str, port: int) -> str:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    if not infos:
        raise OSError(f"no address for {host}")
    return infos[0][4][0]


class ResolverCache:
    """host -> IP cache shared by all requests.

    Entries expire after ttl seconds. Misses are filled on the event loop, so
    a concurrent miss on the same host may resolve twice, and whichever
    finishes last wins; both answers are current.
    """

    def __init__(
        self,
        ttl: float = 5.0,
        resolve: Callable[[str, int], Awaitable[str]] = system_resolve,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self._resolve = resolve
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}

    async def lookup(self, host: str, port: int) -> str:
        entry = self._entries.get(host)
        if entry is not None and entry[1] > self._clock():
            return entry[0]
        address = await self._resolve(host, port)
        self._entries[host] = (address, self._clock() + self.ttl)
        logger.debug(f"Resolved {host} -> {address}")
        return address

    def __len__(self):
        return len(self._entries)


def query_param(request: Request, name: str) -> Optional[str]:
    """First value of a query parameter, or None when it is absent."""
    values = request.query_params.getlist(name)
    return values[0] if values else None


def upstream_url(base: str, request: Request) -> str:
    # raw_path keeps escapes such as %2F intact
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    url = base.rstrip("/") + path
    query = request.scope.get("query_string", b"").decode("latin-1")
    if query:
        url += "?" + query
    return url


def forward_headers(request: Request, authority: Optional[str] = None) -> List[Tuple[bytes, bytes]]:
    headers = [(k, v) for k, v in request.headers.raw if k.decode("latin-1").lower() not in REQUEST_DROP]
    if authority is not None:
        headers.append((b"host", authority.encode("latin-1")))
    return headers


def relay(resp: httpx.Response) -> Response:
    response = Response(content=resp.content, status_code=resp.status_code)
    for k, v in resp.headers.multi_items():
        if k.lower() not in RESPONSE_DROP:
            response.headers.append(k, v)
    return response


def create_app(
    settings: RouterSettings,
    http_client: Optional[httpx.AsyncClient] = None,
    resolver: Optional[ResolverCache] = None,
) -> FastAPI:
    owns_client = http_client is None
    client = http_client if http_client is not None else httpx.AsyncClient()
    dns = resolver if resolver is not None else ResolverCache(ttl=settings.dns_ttl)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            if owns_client:
                await client.aclose()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings
    app.state.resolver = dns

    def pick_pool_member() -> str:
        return random.choice(settings.pool)

    async def where(client_id: str) -> str:
        pool_url = pick_pool_member()
        try:
            resp = await client.get(
                f"{pool_url.rstrip('/')}/where",
                params={"client_id": client_id},
                timeout=settings.resolver_timeout,
            )
        except httpx.HTTPError as e:
            logger.warning(f"Side-call to {pool_url} failed for client_id={client_id}: {e!r}")
            raise GatewayError(502, "resolver httpCall failed") from e

        if resp.status_code != 200:
            logger.warning(f"Side-call to {pool_url} returned {resp.status_code} for client_id={client_id}")
            raise GatewayError(502, f"resolver returned {resp.status_code}")

        hostport = extract_hostport(resp.text)
        if hostport is None:
            logger.warning(f"No hostport in side-call body for client_id={client_id}")
            raise GatewayError(502, "no hostport in resolver body")
        return hostport

    async def forward(request: Request, base: str, authority: Optional[str] = None) -> Response:
        body = await request.body()
        try:
            resp = await client.request(
                request.method,
                upstream_url(base, request),
                headers=forward_headers(request, authority),
                content=body,
                timeout=settings.upstream_timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Upstream {authority or base} timed out: {e!r}")
            raise GatewayError(504, "upstream request timeout") from e
        except httpx.HTTPError as e:
            logger.warning(f"Upstream {authority or base} unreachable: {e!r}")
            raise GatewayError(503, "upstream connect error") from e
        return relay(resp)

    async def route_join(request: Request) -> Response:
        client_id = query_param(request, "client_id")
        if not client_id:
            return PlainTextResponse("missing client_id", status_code=400)

        # The order matters: where, then rewrite, then resolve, then forward.
        hostport = await where(client_id)
        host, port = split_hostport(hostport)
        try:
            address = await dns.lookup(host, port)
        except OSError as e:
            logger.warning(f"Could not resolve {host} for client_id={client_id}: {e!r}")
            raise GatewayError(503, "upstream connect error") from e

        target = f"[{address}]" if ":" in address else address
        logger.info(f"{request.url.path} client_id={client_id} -> {hostport} ({target}:{port})")
        return await forward(request, f"http://{target}:{port}", authority=hostport)

    @app.api_route("/{path:path}", methods=METHODS)
    async def dispatch(request: Request, path: str):
        try:
            if request.url.path.startswith(settings.join_prefix):
                return await route_join(request)
            return await forward(request, pick_pool_member())
        except GatewayError as e:
            return PlainTextResponse(e.message, status_code=e.status_code)

    return app


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--pool", action="append", help="pool member base URL, repeatable (default POOL_URLS)")
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--join-prefix", default=None)
    parser.add_argument("--resolver-timeout", type=float, default=None)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    pool = None
    if args.pool:
        pool = tuple(p for arg in args.pool for p in split_list(arg))
    settings = RouterSettings.from_env(
        pool=pool,
        port=args.port,
        join_prefix=args.join_prefix,
        resolver_timeout=args.resolver_timeout,
    )
    logger.info(f"Starting router on port {settings.port}, pool={', '.join(settings.pool)}, join prefix {settings.join_prefix}")

    import uvicorn
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
