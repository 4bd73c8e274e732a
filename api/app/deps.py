from fastapi import Request

from .database import SessionLocal
from .repo import SqlMatchStore
from .services.conversation_client import ConversationServiceClient
from .services.conversation_provisioning import ConversationProvisioner
from .services.match_service import MatchService


def build_match_service(conversations, session_factory=SessionLocal) -> MatchService:
    store = SqlMatchStore(session_factory)
    return MatchService(store=store, pairing=store, provisioner=ConversationProvisioner(conversations, store))


def get_match_service(request: Request) -> MatchService:
    conversations = getattr(request.app.state, "conversation_client", None)
    if conversations is None:
        conversations = ConversationServiceClient.from_config()
        request.app.state.conversation_client = conversations
    return build_match_service(conversations)
