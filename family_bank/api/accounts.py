"""
Account ledger endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import JSONResponse

from .auth import LedgerSystem, get_account_id, get_claims, get_ledger_system, read_body
from ..authorization import AccessMode
from ..identity import Claims
from ..ledger import normalize_page


router = APIRouter()

NO_CACHE_HEADERS = {"Cache-Control": "no-store, no-cache"}


@router.get("/{account}")
def get_account_ledger(
    account_id: int = Depends(get_account_id),
    claims: Claims = Depends(get_claims),
    p: Optional[str] = Query(None, description="Zero-based history page"),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get balance and one page of transaction history"""
    system.guard.authorize(claims, account_id, AccessMode.READ)
    view = system.reader.load_account(account_id, normalize_page(p))
    return JSONResponse(content=view.to_dict(), headers=NO_CACHE_HEADERS)


@router.post("/{account}")
def post_account_transaction(
    account_id: int = Depends(get_account_id),
    claims: Claims = Depends(get_claims),
    body: bytes = Depends(read_body),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Post a transaction to the account"""
    system.guard.authorize(claims, account_id, AccessMode.WRITE)
    system.writer.post_request(account_id, claims.subject, body)
    return Response(status_code=200)
