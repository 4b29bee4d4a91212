from dispatch_service.models.database import get_session_factory
from dispatch_service.services.container import DispatchServices

_services: DispatchServices | None = None


def get_services() -> DispatchServices:
    global _services
    if _services is None:
        _services = DispatchServices.build(get_session_factory())
    return _services
