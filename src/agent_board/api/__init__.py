from .router import create_board_router

__all__ = ["create_board_router"]
