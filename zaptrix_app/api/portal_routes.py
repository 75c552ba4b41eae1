# zaptrix_app/api/portal_routes.py

import logging
from typing import Optional

from flask import current_app, jsonify, request
from pydantic import BaseModel, Field, ValidationError

from ..exceptions import ConflictError, TransientApiError
from . import api_bp
from .auth import require_api_key

logger = logging.getLogger(__name__)


class PortalCreateRequest(BaseModel):
    portal_address: str = Field(min_length=3)
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(default=None, gt=0)


@api_bp.route('/portals', methods=['GET'])
@require_api_key
def list_portals():
    try:
        portals = current_app.extensions['zaptrix'].portals.list_all()
    except TransientApiError as e:
        return jsonify({"status": "error", "message": str(e)}), 503
    return jsonify({"status": "ok", "portals": [portal.redacted() for portal in portals]}), 200


@api_bp.route('/portals', methods=['POST'])
@require_api_key
def create_portal():
    try:
        data = PortalCreateRequest.model_validate(request.get_json(silent=True) or {})
    except ValidationError as val_err:
        return jsonify({"status": "error", "message": "Invalid portal payload",
                        "errors": val_err.errors(include_url=False, include_context=False,
                                                 include_input=False)}), 400

    try:
        portal = current_app.extensions['zaptrix'].portals.create(**data.model_dump())
    except ConflictError as e:
        logger.info(f"Portal provisioning refused: {e}")
        return jsonify({"status": "error", "message": str(e)}), 409
    except TransientApiError as e:
        return jsonify({"status": "error", "message": str(e)}), 503

    return jsonify({"status": "created", "portal": portal.redacted()}), 201
