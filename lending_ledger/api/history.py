"""
Customer timeline endpoint
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query

from .auth import LedgerSystem, get_ledger_system, get_current_user


router = APIRouter()


@router.get("")
async def get_history(
    from_date: Optional[str] = Query(None, alias="from", description="YYYY-MM-DD, inclusive"),
    to_date: Optional[str] = Query(None, alias="to", description="YYYY-MM-DD, inclusive"),
    event_type: Optional[str] = Query(None, alias="type"),
    page: int = 1,
    limit: Optional[int] = None,
    user_id: str = Depends(get_current_user),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Paginated timeline of the caller's postings and product events"""
    return system.timeline.get_timeline(
        customer_id=user_id,
        from_date=from_date,
        to_date=to_date,
        event_type=event_type,
        page=page,
        limit=limit
    ).to_dict()
