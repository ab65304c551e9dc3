"""
节点证书生命周期的 FastAPI 路由定义。
"""

from fastapi import APIRouter, HTTPException
from . import services
from .schemas import (
    EnsureCertificateRequest,
    EnsureCertificateResponse,
    ExpirationCheckRequest,
    ExpirationReport,
)

router = APIRouter(prefix="/certificates", tags=["Certificates"])


@router.post("/ensure", response_model=EnsureCertificateResponse)
async def ensure_certificate(req: EnsureCertificateRequest) -> EnsureCertificateResponse:
    """
    确保节点证书存在且未临近过期，必要时重新生成。
    """
    try:
        return await services.ensure_certificate_service(req)
    except ValueError as e:
        # 配置错误，返回 400
        raise HTTPException(status_code=400, detail=str(e))
    except RuntimeError as e:
        # 工具执行或密钥校验失败，返回 500
        raise HTTPException(status_code=500, detail=f"证书生成失败: {str(e)}")
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")


@router.post("/expiration", response_model=ExpirationReport)
async def check_expiration(req: ExpirationCheckRequest) -> ExpirationReport:
    """
    检查已有证书是否将在告警窗口内过期。
    """
    try:
        return await services.check_expiration_service(req)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=500, detail=f"证书有效期检查失败: {str(e)}")
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")
