from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, HTTPException, Query

from ..integrations import nova_poshta, ukrposhta
from ..models import SettlementOut


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/shipping", tags=["shipping"])


def _require_query(q: str) -> str:
    q = (q or "").strip()
    if len(q) < 2:
        raise HTTPException(status_code=400, detail="Query parameter must be at least 2 characters")
    return q


@router.get("/nova-poshta/cities", response_model=List[SettlementOut])
def np_cities(q: str = Query("", max_length=100)):
    query = _require_query(q)
    try:
        return [SettlementOut(**c) for c in nova_poshta.search_settlements(query)]
    except nova_poshta.NovaPoshtaError as e:
        logger.warning("nova poshta city search failed q=%s: %s", query, e)
        raise HTTPException(status_code=502, detail=f"Failed to search cities: {e}")


@router.get("/nova-poshta/warehouses", response_model=List[SettlementOut])
def np_warehouses(city_ref: str = Query(..., min_length=1, max_length=64), q: str | None = Query(None, max_length=100)):
    try:
        return [SettlementOut(**w) for w in nova_poshta.get_warehouses(city_ref, q)]
    except nova_poshta.NovaPoshtaError as e:
        logger.warning("nova poshta warehouses failed city=%s: %s", city_ref, e)
        raise HTTPException(status_code=502, detail=f"Failed to fetch warehouses: {e}")


@router.get("/ukrposhta/cities", response_model=List[SettlementOut])
def up_cities(q: str = Query("", max_length=100)):
    query = _require_query(q)
    try:
        return [SettlementOut(**c) for c in ukrposhta.search_cities(query)]
    except ukrposhta.UkrposhtaError as e:
        logger.warning("ukrposhta city search failed q=%s: %s", query, e)
        raise HTTPException(status_code=502, detail=f"Failed to search cities: {e}")


@router.get("/ukrposhta/warehouses", response_model=List[SettlementOut])
def up_warehouses(city_id: str = Query(..., min_length=1, max_length=64)):
    try:
        return [SettlementOut(**w) for w in ukrposhta.get_warehouses(city_id)]
    except ukrposhta.UkrposhtaError as e:
        logger.warning("ukrposhta warehouses failed city=%s: %s", city_id, e)
        raise HTTPException(status_code=502, detail=f"Failed to fetch warehouses: {e}")
