from fastapi import Request

from engine import ChatEngine


def get_engine(request: Request) -> ChatEngine:
    return request.app.state.engine


def client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"
