from livada.api.server import CORS_HEADERS, GatewayServer, create_app

__all__ = ["CORS_HEADERS", "GatewayServer", "create_app"]
