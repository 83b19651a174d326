"""
jmsmp.api.routes.public — Read-only public endpoints
====================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import Engine

from jmsmp.api.deps import get_config, get_engine
from jmsmp.config import JmsmpConfig
from jmsmp.services import admin_service

router = APIRouter(tags=["public"])


@router.get("/server-info")
def server_info(cfg: JmsmpConfig = Depends(get_config)):
    """Connection details shown on the landing page."""
    return {
        "name": cfg.community_name,
        "ip": cfg.server_ip,
        "port": cfg.server_port,
        "version": cfg.server_version,
        "launcher": cfg.launcher_url,
    }


@router.get("/studio-recruitment")
def studio_recruitment(engine: Engine = Depends(get_engine)):
    return admin_service.get_studio_recruitment(engine)
