"""
Client endpoints. The client is identified by its session token.
"""
from fastapi import APIRouter, Depends

import database
from app.api.auth import current_client_id, session_token
from app.core import session_store
from app.api.schemas import CheckoutRequest, CodeRequest, PurchaseRequest
from app.core.exceptions import NotFound
from app.services import payments as payment_service
from app.services import promo as promo_service
from app.services import trials as trial_service

router = APIRouter(prefix="/client")


@router.get("/balance")
async def get_balance(client_id: int = Depends(current_client_id)):
    balance = await database.get_client_balance(client_id)
    if balance is None:
        raise NotFound(f"Client {client_id} not found")
    return {"client_id": client_id, "balance": balance}


@router.post("/trial")
async def activate_trial(client_id: int = Depends(current_client_id)):
    return await trial_service.activate_trial(client_id)


@router.post("/promo-groups/activate")
async def activate_promo_group(body: CodeRequest, client_id: int = Depends(current_client_id)):
    return await promo_service.activate_promo_group(client_id, body.code.strip())


@router.post("/promo-codes/check")
async def check_promo_code(body: CodeRequest, client_id: int = Depends(current_client_id)):
    return await promo_service.check_promo_code(body.code.strip(), client_id)


@router.post("/promo-codes/activate")
async def activate_promo_code(body: CodeRequest, client_id: int = Depends(current_client_id)):
    return await promo_service.activate_promo_code(client_id, body.code.strip())


@router.post("/payments/balance")
async def pay_from_balance(body: PurchaseRequest, client_id: int = Depends(current_client_id)):
    return await payment_service.pay_from_balance(
        client_id,
        body.to_purchase(),
        promo_code=body.promo_code.strip() if body.promo_code else None,
    )


@router.post("/payments/checkout")
async def create_checkout(body: CheckoutRequest, client_id: int = Depends(current_client_id)):
    return await payment_service.create_checkout(
        client_id,
        body.to_purchase(),
        body.provider,
        promo_code=body.promo_code.strip() if body.promo_code else None,
    )


@router.delete("/session")
async def logout(token: str = Depends(session_token)):
    await session_store.delete_session(token)
    return {"ok": True}
