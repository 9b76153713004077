"""FastAPI dependencies shared by the delivery routes."""

from typing import Annotated

from fastapi import Depends, Request

from app.services.delivery.container import DeliveryServices


def get_delivery_services(request: Request) -> DeliveryServices:
    """Services built in the application lifespan."""
    return request.app.state.delivery


Delivery = Annotated[DeliveryServices, Depends(get_delivery_services)]
