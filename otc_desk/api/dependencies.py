"""Shared request dependencies."""

from fastapi import Request

from otc_desk.engine.desk import OTCDesk


def get_desk(request: Request) -> OTCDesk:
    return request.app.state.desk
