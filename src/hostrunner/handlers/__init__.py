from hostrunner.handlers.base import AgentBrief, OperationStep
from hostrunner.handlers.bootstrap import BOOTSTRAP
from hostrunner.handlers.client_advisor import CLIENT_ADVISOR
from hostrunner.handlers.provision import PROVISION
from hostrunner.handlers.tailscale_status import TAILSCALE_STATUS
from hostrunner.registry import HandlerRegistry

DEFAULT_HANDLERS = (BOOTSTRAP, PROVISION, TAILSCALE_STATUS, CLIENT_ADVISOR)


def build_default_registry() -> HandlerRegistry:
    return HandlerRegistry(DEFAULT_HANDLERS).freeze()


__all__ = [
    "AgentBrief",
    "BOOTSTRAP",
    "CLIENT_ADVISOR",
    "DEFAULT_HANDLERS",
    "OperationStep",
    "PROVISION",
    "TAILSCALE_STATUS",
    "build_default_registry",
]
