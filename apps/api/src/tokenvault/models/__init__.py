from .social_account import SocialAccount

__all__ = [
    "SocialAccount",
]
