import uuid
from typing import Optional

from fastapi import Header, Request

from .errors import Forbidden, ValidationError
from .lifecycle import Actor
from .models import Role


def get_correlation_id(request: Request, x_correlation_id: Optional[str] = Header(None)):
    cid = x_correlation_id or str(uuid.uuid4())
    # error handlers answer with the same id the logs carry
    request.state.correlation_id = cid
    return cid


def get_actor(
    x_user_id: Optional[int] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    # identity is established by the auth gateway in front of this service
    if x_user_id is None or not x_user_role:
        raise Forbidden("Missing caller identity")
    try:
        role = Role(x_user_role)
    except ValueError:
        raise ValidationError(f"Unknown role: {x_user_role}")
    return Actor(user_id=x_user_id, role=role)
