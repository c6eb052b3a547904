from typing import Dict, List, Optional, Tuple

from flask import current_app
from pymongo import ReturnDocument


def release_stock(db, lines: List[Dict], session=None):
    """Return quantities to stock. Lines carry ``product_id`` and ``quantity``."""
    for line in lines:
        db.products.update_one(
            {"_id": line["product_id"]},
            {"$inc": {"stock": int(line["quantity"])}},
            session=session,
        )


def reserve_stock(db, lines: List[Dict], session=None) -> Tuple[List[Dict], Optional[Dict]]:
    """Decrement stock line by line, refusing to go below zero.

    Returns the updated product documents and the first line that could not
    be reserved. Outside a transaction the lines reserved before the failure
    are released again; inside one the caller aborts instead.
    """
    reserved_lines: List[Dict] = []
    updated_products: List[Dict] = []
    for line in lines:
        quantity = int(line["quantity"])
        updated = db.products.find_one_and_update(
            {"_id": line["product_id"], "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if updated is None:
            if reserved_lines and session is None:
                current_app.logger.warning(
                    "Stock conflict on product %s; releasing %d reserved line(s)",
                    line["product_id"],
                    len(reserved_lines),
                )
                release_stock(db, reserved_lines)
            return [], line
        reserved_lines.append(line)
        updated_products.append(updated)
    return updated_products, None
