from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from ..auth import get_current_user_id
from ..database import get_session
from ..models.device import Device, DeviceRegister

router = APIRouter(
    prefix="/devices",
    tags=["Devices"]
)


@router.post("", status_code=201)
def register_device(
    request: DeviceRegister,
    db: Session = Depends(get_session),
    current_user_id: str = Depends(get_current_user_id)
):
    existing_device = db.exec(
        select(Device).where(
            (Device.user_id == current_user_id) &
            (Device.fcm_token == request.fcm_token)
        )
    ).first()

    if not existing_device:
        device = Device(
            user_id=current_user_id,
            fcm_token=request.fcm_token,
            platform=request.platform,
            app_version=request.app_version
        )
        db.add(device)
        db.commit()

    return {"message": "Device registered"}


@router.delete("/{fcm_token}")
def unregister_device(
    fcm_token: str,
    db: Session = Depends(get_session),
    current_user_id: str = Depends(get_current_user_id)
):
    # Remove the device with matching FCM token for this user
    device = db.exec(
        select(Device).where(
            (Device.user_id == current_user_id) &
            (Device.fcm_token == fcm_token)
        )
    ).first()

    if device:
        db.delete(device)
        db.commit()

    return {"message": "Device removed"}
