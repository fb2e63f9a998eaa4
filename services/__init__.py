# Services are imported explicitly where needed; the composition root in
# services.container wires them together:
# from services.container import build_container
# from services.authenticator import Authenticator

__all__ = []
