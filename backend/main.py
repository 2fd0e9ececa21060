from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
from config import RelaySettings
from signaling import CallRelay, ConnectionRegistry
import logging
import uvicorn

__version__ = "0.1.0"


def create_app(settings: Optional[RelaySettings] = None) -> FastAPI:
    settings = settings or RelaySettings()
    relay = CallRelay(
        ConnectionRegistry(),
        notify_unavailable=settings.notify_unavailable,
        end_call_scope=settings.end_call_scope,
        outbox_size=settings.outbox_size,
    )

    app = FastAPI(title="Peer Call Signaling Relay", version=__version__)
    app.state.settings = settings
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST"],
    )

    @app.get("/")
    async def health():
        return {"status": "healthy", "version": __version__, "connections": relay.connection_count}

    @app.get("/identities/{identity}")
    async def get_identity(identity: str):
        if not relay.is_connected(identity):
            raise HTTPException(status_code=404, detail="User not connected")
        return {"identity": identity, "connected": True}

    @app.websocket("/ws")
    async def signaling_websocket(websocket: WebSocket):
        origin = websocket.headers.get("origin")
        if not settings.origin_allowed(origin):
            logging.warning(f"Connection rejected: origin {origin} not allowed")
            await websocket.close(code=1008)
            return

        await websocket.accept()
        connection = await relay.connect(websocket)
        try:
            while True:
                data = await websocket.receive_text()
                await relay.dispatch(connection, data)
        except WebSocketDisconnect:
            logging.info(f"Identity {connection.identity} closed its connection")
        except Exception as e:
            logging.error(f"WebSocket error for {connection.identity}: {e}")
        finally:
            await relay.disconnect(connection.identity)

    return app


settings = RelaySettings()
logging.basicConfig(level=settings.log_level)

app = create_app(settings)


def run():
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
