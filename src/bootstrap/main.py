"""
FastAPI 应用入口点。
"""

from loguru import logger
from fastapi.middleware.cors import CORSMiddleware

from fastapi import FastAPI
from src.bootstrap.certificates.router import router as certificates_router
from src.bootstrap.compose.router import router as compose_router

from src.bootstrap.config import config

app = FastAPI(title="Node Fleet Bootstrap Service")
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 证书生命周期与部署拓扑编译
app.include_router(certificates_router, prefix="/v1")
app.include_router(compose_router, prefix="/v1")

logger.info(f"config: {config.model_dump_json(indent=4)}")


@app.get("/v1/health")
async def health() -> dict:
    return {"status": "ok", "target_folder": config.target_folder}
