"""
部署拓扑编译的 FastAPI 路由定义。
"""

from typing import Any

from fastapi import APIRouter, HTTPException
from . import services
from .schemas import ComposeRequest

router = APIRouter(prefix="/compose", tags=["Compose"])


@router.post("")
async def compile_compose(req: ComposeRequest) -> dict[str, Any]:
    """
    将部署预设编译为 docker-compose 清单；清单已存在且未要求 upgrade 时原样返回。
    """
    try:
        manifest = await services.compile_compose_service(req)
        return manifest.model_dump(mode="json", exclude_unset=True)
    except ValueError as e:
        # 预设配置错误，返回 400
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")
