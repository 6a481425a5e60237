from docvault.auth.token import TokenPayload, get_current_user, verify_token
from docvault.auth.dependencies import CurrentUser, Documents, Ranker

__all__ = [
    "TokenPayload", "get_current_user", "verify_token",
    "CurrentUser", "Documents", "Ranker",
]
