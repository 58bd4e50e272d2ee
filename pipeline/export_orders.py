from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Dict, List

import pandas as pd

from .config import Paths, PostgresConfig
from .db import get_engine


logger = logging.getLogger(__name__)


ORDERS_SQL = """
    SELECT o.id AS order_id,
           o.created_at,
           o.status,
           o.payment_status,
           o.payment_method,
           o.delivery_method,
           o.customer_name,
           o.customer_phone,
           o.customer_email,
           o.delivery_info->>'city' AS city,
           o.promo_code,
           o.discount_amount,
           o.total_price,
           o.ttn
    FROM svitanok.orders o
    ORDER BY o.created_at DESC, o.id DESC
"""

ITEMS_SQL = """
    SELECT i.order_id,
           i.product_id,
           i.product_name,
           i.quantity,
           i.price_at_purchase,
           i.quantity * i.price_at_purchase AS line_total
    FROM svitanok.order_items i
    ORDER BY i.order_id, i.id
"""


def _ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def summarize(orders: pd.DataFrame) -> pd.DataFrame:
    """Daily order counts and paid revenue."""
    if orders.empty:
        return pd.DataFrame(columns=["day", "orders", "paid_orders", "paid_revenue"])
    df = orders.copy()
    df["day"] = pd.to_datetime(df["created_at"], utc=True).dt.date
    df["paid_total"] = df["total_price"].where(df["payment_status"] == "paid", 0).astype(float)
    out = (
        df.groupby("day")
        .agg(
            orders=("order_id", "count"),
            paid_orders=("payment_status", lambda s: int((s == "paid").sum())),
            paid_revenue=("paid_total", "sum"),
        )
        .reset_index()
        .sort_values("day")
    )
    out["paid_revenue"] = out["paid_revenue"].round(2)
    return out


def _drop_tz(df: pd.DataFrame) -> pd.DataFrame:
    # openpyxl cannot write timezone-aware datetimes.
    for col in df.columns:
        if isinstance(df[col].dtype, pd.DatetimeTZDtype):
            df[col] = df[col].dt.tz_convert("UTC").dt.tz_localize(None)
    return df


def write_report(frames: Dict[str, pd.DataFrame], out_path: Path) -> List[Path]:
    out_path = out_path.resolve()
    _ensure_dir(out_path.parent)

    if out_path.suffix.lower() == ".csv":
        written = []
        for name, df in frames.items():
            target = out_path if name == "Orders" else out_path.with_name(f"{out_path.stem}_{name.lower()}.csv")
            df.to_csv(target, index=False, encoding="utf-8-sig")
            written.append(target)
        return written

    with pd.ExcelWriter(out_path, engine="openpyxl") as writer:
        for name, df in frames.items():
            _drop_tz(df.copy()).to_excel(writer, sheet_name=name, index=False)
    return [out_path]


def build_orders_report(out_path: Path) -> List[Path]:
    cfg = PostgresConfig()
    engine = get_engine(cfg)

    orders = pd.read_sql(ORDERS_SQL, engine)
    items = pd.read_sql(ITEMS_SQL, engine)
    logger.info("exporting %s orders, %s items", len(orders), len(items))

    return write_report({"Orders": orders, "Items": items, "Daily": summarize(orders)}, out_path)


def main(argv: List[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    parser = argparse.ArgumentParser()
    default_root = Path(__file__).resolve().parents[1]
    paths = Paths(project_root=str(default_root))

    parser.add_argument(
        "--out",
        default=os.path.join(paths.reports_dir, "svitanok_orders.xlsx"),
        help="Output .xlsx workbook or .csv file",
    )
    args = parser.parse_args(argv)

    for p in build_orders_report(Path(args.out)):
        logger.info("wrote %s", p)


if __name__ == "__main__":
    main()
