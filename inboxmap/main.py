#!/usr/bin/env python3
"""
Inbox Map Web Application
FastAPI server with WebSocket support for live sync updates
"""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional, Set

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Configure logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from inboxmap.demo import demo_domain_colors, demo_hierarchy
from inboxmap.errors import AccountMismatch, NotAuthenticated, SyncInProgress
from inboxmap.favicon import ColorEnricher, FaviconSource
from inboxmap.gmail_service import GmailAuth, GmailSession
from inboxmap.models import CountFilter, EnrichmentConfig, FetchConfig, StoreConfig, SyncState
from inboxmap.storage import RecordStore
from inboxmap.sync import SyncOrchestrator
from inboxmap.treemap import build_treemap_view


class ConnectionManager:
    """Manage WebSocket connections"""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket):
        self.active_connections.discard(websocket)

    async def broadcast(self, message_type: str, data: Dict):
        """Broadcast message to all connected clients"""
        message = {"type": message_type, "data": data}
        disconnected = set()

        for connection in list(self.active_connections):
            try:
                await connection.send_text(json.dumps(message))
                # Force immediate send without buffering
                await asyncio.sleep(0)
            except Exception:
                disconnected.add(connection)

        # Remove disconnected clients
        for conn in disconnected:
            self.active_connections.discard(conn)


# Request models
class ViewRequest(BaseModel):
    path: List[str] = []  # node ids from the top level down
    filter: CountFilter = CountFilter.ALL


class AppContext:
    """Everything a request needs: sign-in, the current session and the sync orchestrator"""

    def __init__(
        self,
        auth: GmailAuth,
        store: RecordStore,
        enricher: Optional[ColorEnricher] = None,
        fetch_config: Optional[FetchConfig] = None,
        redirect_uri: str = "http://localhost:8000/oauth/callback",
        others_label: str = "Others"
    ):
        self.auth = auth
        self.redirect_uri = redirect_uri
        self.others_label = others_label
        self.session: Optional[GmailSession] = None
        self.manager = ConnectionManager()
        self.orchestrator = SyncOrchestrator(
            store,
            enricher=enricher,
            config=fetch_config,
            on_change=self._broadcast_state,
            others_label=others_label
        )

    @classmethod
    def from_env(cls) -> 'AppContext':
        enrichment_config = EnrichmentConfig()
        return cls(
            auth=GmailAuth(
                credentials_path=os.getenv("INBOXMAP_CREDENTIALS_PATH", "data/credentials.json"),
                token_path=os.getenv("INBOXMAP_TOKEN_PATH", "data/token.json")
            ),
            store=RecordStore(StoreConfig(path=os.getenv("INBOXMAP_DB_PATH", StoreConfig.path))),
            enricher=ColorEnricher(FaviconSource(enrichment_config)),
            redirect_uri=os.getenv("INBOXMAP_REDIRECT_URI", "http://localhost:8000/oauth/callback")
        )

    async def _broadcast_state(self, state: SyncState) -> None:
        await self.manager.broadcast("state", state.to_dict())

    def require_session(self) -> GmailSession:
        if self.session is None:
            self.session = self.auth.authenticate()
        if self.session is None:
            logger.warning("Not authenticated")
            raise HTTPException(status_code=400, detail="Not authenticated. Please authenticate first.")
        return self.session


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """Build the FastAPI app; the context is created from the environment at startup if not given"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.context = context or AppContext.from_env()
        logger.info(f"Starting Inbox Map with log level: {LOG_LEVEL}")
        yield
        await app.state.context.orchestrator.wait_for_background()

    app = FastAPI(title="Inbox Map", description="See your inbox as a treemap of senders", lifespan=lifespan)

    def ctx() -> AppContext:
        return app.state.context

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {"status": "healthy"}

    # === Authentication ===

    @app.get("/auth/status")
    def check_auth_status():
        """Check if already authenticated"""
        context = ctx()
        if context.session is None:
            context.session = context.auth.authenticate()
        return {"authenticated": context.session is not None}

    @app.post("/auth/upload")
    def upload_credentials(credentials: dict):
        """Handle uploaded credentials and start OAuth flow"""
        context = ctx()
        try:
            creds_path = Path(context.auth.credentials_path)
            creds_path.parent.mkdir(parents=True, exist_ok=True)
            creds_path.write_text(json.dumps(credentials))
            logger.info(f"Saved credentials to {creds_path.absolute()}")

            auth_url = context.auth.create_oauth_flow(context.redirect_uri)
            return {"status": "redirect", "auth_url": auth_url}
        except (OSError, ValueError, NotAuthenticated) as e:
            logger.error(f"Error in upload_credentials: {e}")
            raise HTTPException(status_code=400, detail=str(e))

    @app.get("/oauth/callback")
    def oauth_callback(code: str = None, error: str = None):
        """Handle OAuth2 callback from Google"""
        if error:
            return RedirectResponse(url="/?auth_error=" + error)
        if not code:
            return RedirectResponse(url="/?auth_error=no_code")

        context = ctx()
        context.session = context.auth.complete_oauth_flow(code)
        if context.session is None:
            return RedirectResponse(url="/?auth_error=oauth_failed")
        return RedirectResponse(url="/?auth_success=true")

    # === Sync ===

    @app.post("/sync/restore")
    async def restore():
        """Show cached data if there is any"""
        orchestrator = ctx().orchestrator
        try:
            restored = await orchestrator.restore()
        except SyncInProgress as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"restored": restored, "state": orchestrator.state.to_dict()}

    @app.post("/sync/fetch")
    async def full_fetch():
        """Fetch the whole inbox; progress is streamed over the WebSocket"""
        context = ctx()
        session = context.require_session()
        try:
            await context.orchestrator.full_fetch(session)
        except SyncInProgress as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"state": context.orchestrator.state.to_dict()}

    @app.post("/sync/update")
    async def incremental_fetch():
        """Fetch only messages that arrived since the last sync"""
        context = ctx()
        session = context.require_session()
        try:
            await context.orchestrator.incremental_fetch(session)
        except (SyncInProgress, AccountMismatch) as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"state": context.orchestrator.state.to_dict()}

    @app.post("/sync/reset")
    async def reset():
        """Sign out and forget everything"""
        context = ctx()
        context.auth.sign_out()
        context.session = None
        await context.orchestrator.reset()
        return {"state": context.orchestrator.state.to_dict()}

    # === Views ===

    @app.get("/state")
    def get_state(records: bool = False):
        return ctx().orchestrator.state.to_dict(include_records=records)

    @app.post("/treemap")
    def get_treemap(request: ViewRequest):
        """Treemap of the level reached by following request.path from the top"""
        context = ctx()
        state = context.orchestrator.state
        view = build_treemap_view(
            state.hierarchy,
            state.domain_colors,
            request.path,
            request.filter,
            context.others_label
        )
        return view.to_dict()

    @app.post("/demo/treemap")
    def get_demo_treemap(request: ViewRequest):
        view = build_treemap_view(
            demo_hierarchy(),
            demo_domain_colors(),
            request.path,
            request.filter,
            ctx().others_label
        )
        return view.to_dict()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket endpoint for live state updates"""
        manager = ctx().manager
        await manager.connect(websocket)

        try:
            while True:
                # Keep connection alive
                await websocket.receive_text()
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    return app


app = create_app()

# To run this application, use:
# uv run python -m uvicorn inboxmap.main:app --reload
