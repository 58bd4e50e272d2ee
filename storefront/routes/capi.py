from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request, Response

from ..integrations import meta_capi
from ..models import CapiEventIn, CapiOut
from ..ratelimit import client_ip, limit


router = APIRouter(prefix="/api/capi", tags=["capi"])


def _custom_data(req: CapiEventIn) -> Dict[str, Any]:
    data: Dict[str, Any] = {"currency": req.currency}
    if req.value is not None:
        data["value"] = req.value
    if req.content_ids:
        data["content_ids"] = req.content_ids
        data["content_type"] = "product"
    if req.contents:
        data["contents"] = [c.model_dump(exclude_none=True) for c in req.contents]
    if req.content_name:
        data["content_name"] = req.content_name
    if req.num_items is not None:
        data["num_items"] = req.num_items
    return data


def _send(event_name: str, req: CapiEventIn, request: Request, retries: bool, order_id: Optional[str] = None) -> CapiOut:
    user_data = meta_capi.build_user_data(
        req.user_data.model_dump(exclude_none=True),
        client_user_agent=request.headers.get("user-agent"),
        client_ip=client_ip(request),
    )
    custom = _custom_data(req)
    if order_id:
        custom["order_id"] = order_id
    event = meta_capi.build_event(
        event_name,
        user_data,
        custom,
        event_id=req.event_id,
        event_time=req.event_time,
        event_source_url=req.event_source_url or request.headers.get("referer"),
    )
    try:
        result = meta_capi.send_events([event], retries=retries)
    except meta_capi.ConversionsAPIError as e:
        raise HTTPException(status_code=502, detail={"error": str(e), "details": e.details})

    return CapiOut(
        test_mode=bool(result.get("test_mode")),
        events_received=result.get("events_received"),
        fbtrace_id=result.get("fbtrace_id"),
        event_id=event["event_id"],
    )


@router.post("/purchase", response_model=CapiOut)
@limit("capi")
def purchase(req: CapiEventIn, request: Request, response: Response):
    if req.value is None:
        raise HTTPException(status_code=400, detail="Purchase value is required")
    return _send("Purchase", req, request, retries=True, order_id=req.order_id or req.event_id)


@router.post("/view-content", response_model=CapiOut)
@limit("capi")
def view_content(req: CapiEventIn, request: Request, response: Response):
    return _send("ViewContent", req, request, retries=False)


@router.post("/add-to-cart", response_model=CapiOut)
@limit("capi")
def add_to_cart(req: CapiEventIn, request: Request, response: Response):
    return _send("AddToCart", req, request, retries=False)
