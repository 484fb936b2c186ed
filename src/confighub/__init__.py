"""confighub: encrypted credential vault and authenticated sessions for DevOps backends."""

__version__ = "0.1.0"


def open_gateway(settings=None, *, transport=None):
    """Wire a ready-to-use :class:`~confighub.gateway.RequestGateway` for scripts.

    Loads settings from the environment (unless given), resolves the master
    key, opens the credential store and builds a session manager on top of it.

    Args:
        settings: Optional :class:`~confighub.config.Settings`; defaults to ``Settings.from_env()``.
        transport: Optional httpx async transport, mainly for tests.

    Example::

        import asyncio
        from confighub import open_gateway

        gateway = open_gateway()
        result = asyncio.run(gateway.request("secret-store", "prod", "/v1/sys/health"))
        if result.ok:
            print(result.data)
    """
    from .config import Settings
    from .crypto import CredentialCipher
    from .gateway import RequestGateway
    from .keys import load_master_key
    from .session import SessionManager
    from .store import CredentialStore

    settings = settings or Settings.from_env()
    store = CredentialStore(settings.data_dir, CredentialCipher(load_master_key(settings)))
    sessions = SessionManager(
        store,
        safety_margin=settings.safety_margin,
        timeout=settings.request_timeout,
        transport=transport,
    )
    return RequestGateway(sessions)
