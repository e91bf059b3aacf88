import argparse
import logging

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from selector import resolve_target
from settings import ServerSettings

logger = logging.getLogger(__name__)


def first_client_id(request: Request):
    # a repeated client_id resolves to its first value
    values = request.query_params.getlist("client_id")
    return values[0] if values else None


def missing_client_id():
    return PlainTextResponse("missing client_id", status_code=400)


def create_app(settings: ServerSettings) -> FastAPI:
    app = FastAPI()
    app.state.settings = settings

    @app.get("/where")
    def where(request: Request):
        client_id = first_client_id(request)
        if not client_id:
            return missing_client_id()

        hostport = resolve_target(client_id, settings)
        logger.info(f"/where client_id={client_id} assigned to {hostport}")
        return {"client_id": client_id, "hostport": hostport}

    @app.get("/join")
    def join(request: Request):
        client_id = first_client_id(request)
        if not client_id:
            return missing_client_id()

        # Whoever receives this is trusted to be the right replica; the
        # gateway already did the routing.
        me = settings.self_hostport
        logger.info(f"/join client_id={client_id} registered to {me}")
        return {"status": "ok", "client_id": client_id, "assigned": me}

    @app.get("/health", response_class=PlainTextResponse)
    def health():
        return "ok"

    return app


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--port", type=int, default=None, help="overrides PORT")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    settings = ServerSettings.from_env()
    if args.port is not None:
        settings = settings.model_copy(update={"port": args.port})
        if settings.template is not None:
            settings = settings.model_copy(
                update={"template": settings.template.model_copy(update={"port": args.port})}
            )

    rs = settings.replica_set
    if settings.template is not None:
        logger.info(
            f"Scaled addressing: {settings.template.prefix}-<idx>{settings.template.suffix}:{settings.template.port} "
            f"(replicas={rs.replicas}, mode={rs.index_mode.value}, base={rs.index_base})"
        )
    elif settings.peers:
        logger.info(f"Legacy peer list: {', '.join(settings.peers)}")
    else:
        logger.info("No SERVICE_PREFIX or SERVER_PEERS, every client resolves to this instance")
    logger.info(f"Server starting on :{settings.port} (hostname={settings.hostname})")

    import uvicorn
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
