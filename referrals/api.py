import logging
import secrets
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .container import Services, build_services
from .errors import ConflictError, ConflictReason, LedgerError
from .models import (
    CreateReferralCodeRequest,
    CreateReferralParams,
    Referral,
    ReferralCode,
    Reward,
    SettlementSummary,
    VoidRewardsResponse,
)
from .settings import get_settings

logger = logging.getLogger(__name__)


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_admin(request: Request, x_admin_secret: Optional[str] = Header(default=None)) -> None:
    expected = get_services(request).settings.admin_secret
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin endpoints are not configured")
    if not x_admin_secret or not secrets.compare_digest(x_admin_secret, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin secret")


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services(get_settings())

    app = FastAPI(
        title="Coworking Referral API",
        description="Referral codes, referral lifecycle and reward settlement for the coworking space",
        version="1.0.0",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "referral-ledger"}

    @app.post("/referral-codes", response_model=ReferralCode, status_code=status.HTTP_201_CREATED,
              tags=["Referral codes"])
    def create_referral_code(request: CreateReferralCodeRequest,
                             services: Services = Depends(get_services)) -> ReferralCode:
        existing = services.codes.find_code_for_owner(request.referrer_id)
        if existing:
            raise ConflictError(
                "Referrer already has a referral code",
                ConflictReason.CODE_ALREADY_EXISTS,
                {"referralCode": existing.code},
            )
        return services.codes.create_referral_code(
            request.referrer_id, request.referrer_company_id, request.referrer_type
        )

    @app.get("/referral-codes/{code}", response_model=ReferralCode, tags=["Referral codes"])
    def get_referral_code(code: str, services: Services = Depends(get_services)) -> ReferralCode:
        return services.codes.get_referral_code(code.upper())

    @app.post("/admin/referrals", response_model=Referral, status_code=status.HTTP_201_CREATED,
              tags=["Referrals"], dependencies=[Depends(require_admin)])
    def create_referral(params: CreateReferralParams, services: Services = Depends(get_services)) -> Referral:
        return services.ledger.create_referral(params)

    @app.get("/admin/referrals/{referral_id}", response_model=Referral,
             tags=["Referrals"], dependencies=[Depends(require_admin)])
    def get_referral(referral_id: str, services: Services = Depends(get_services)) -> Referral:
        return services.ledger.get_referral(referral_id)

    @app.post("/admin/referrals/{referral_id}/confirm", response_model=Referral,
              tags=["Referrals"], dependencies=[Depends(require_admin)])
    def confirm_conversion(referral_id: str, services: Services = Depends(get_services)) -> Referral:
        return services.ledger.confirm_conversion(referral_id)

    @app.get("/admin/referrals/{referral_id}/rewards", response_model=list[Reward],
             tags=["Rewards"], dependencies=[Depends(require_admin)])
    def list_rewards(referral_id: str, services: Services = Depends(get_services)) -> list[Reward]:
        return services.rewards.list_rewards_for_referral(referral_id)

    @app.post("/admin/referrals/{referral_id}/rewards/void", response_model=VoidRewardsResponse,
              tags=["Rewards"], dependencies=[Depends(require_admin)])
    def void_future_rewards(referral_id: str, services: Services = Depends(get_services)) -> VoidRewardsResponse:
        voided = services.rewards.void_future_rewards(referral_id)
        return VoidRewardsResponse(referral_id=referral_id, voided=voided)

    @app.post("/admin/rewards/process", response_model=SettlementSummary,
              tags=["Rewards"], dependencies=[Depends(require_admin)])
    def process_due_rewards(services: Services = Depends(get_services)) -> SettlementSummary:
        return services.rewards.process_due_rewards()

    return app


if __name__ == "__main__":
    import uvicorn

    from .logging_config import setup_logging

    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(create_app(build_services(settings)), host="0.0.0.0", port=8000)
