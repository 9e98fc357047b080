"""FastAPI dependencies resolving the services built in the application lifespan."""

from fastapi import Request

from src.clients.comparator_client import FaceComparatorClient
from src.clients.delivery_client import SubmissionMailer
from src.services.flow_service import FlowRegistry


def get_comparator(request: Request) -> FaceComparatorClient:
    return request.app.state.comparator


def get_mailer(request: Request) -> SubmissionMailer:
    return request.app.state.mailer


def get_flow_registry(request: Request) -> FlowRegistry:
    return request.app.state.flow_registry
