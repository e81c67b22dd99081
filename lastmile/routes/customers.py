from fastapi import APIRouter, Depends, Query

from lastmile.dependencies import get_store
from lastmile.store import OrderStore

router = APIRouter(prefix="/customers", tags=["customers"])


@router.get("/orders")
async def customer_orders(
    phone: str = Query(..., pattern=r"^[0-9]{10}$", description="Customer phone number, 10 digits"),
    store: OrderStore = Depends(get_store),
) -> dict:
    """Orders placed with this phone number, newest first."""
    orders = await store.orders_for_phone(phone)
    return {
        "phone": phone,
        "orders": [o.model_dump(mode="json") for o in orders],
        "count": len(orders),
    }
