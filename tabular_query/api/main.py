"""
FastAPI application for the tabular query engine.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tabular_query.api.routes.chat import router as chat_router
from tabular_query.core.constants import API_VERSION, CORS_ORIGINS, PUBLIC_API_ORIGIN
from tabular_query.core.profile import DatasetProfile, load_profile
from tabular_query.engine.export import ExportMaterializer, ServerLinkIssuer
from tabular_query.engine.gateway import DataGateway
from tabular_query.engine.sheet_codec import PandasSheetCodec
from tabular_query.engine.session import SessionStore
from tabular_query.nlq.intent_router import IntentRouter
from tabular_query.utils.log_utils import get_logger

logger = get_logger(__name__)


def build_intent_router(profile: Optional[DatasetProfile] = None) -> IntentRouter:
    """Wire the engines from the dataset profile and environment."""
    profile = profile or load_profile()
    codec = PandasSheetCodec()
    link_issuer = ServerLinkIssuer(PUBLIC_API_ORIGIN) if PUBLIC_API_ORIGIN else None
    return IntentRouter(
        gateway=DataGateway(profile.endpoints),
        sessions=SessionStore(),
        materializer=ExportMaterializer(link_issuer=link_issuer, sheet_codec=codec),
        profile=profile,
        sheet_codec=codec,
    )


def create_app(intent_router: Optional[IntentRouter] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.intent_router.gateway.aclose()

    app = FastAPI(title="Tabular Query Engine API", version=API_VERSION, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.intent_router = intent_router or build_intent_router()
    app.include_router(chat_router)

    @app.get("/health")
    def health():
        return {"status": "ok", "version": API_VERSION}

    logger.info(f"[API] Serving dataset '{app.state.intent_router.profile.dataset_name}'")
    return app


app = create_app()
