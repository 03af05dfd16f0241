# src/core/rate_limit_config.py
"""
Rate limiting configuration for the triage API
"""

from fastapi import Request
from slowapi.util import get_remote_address


def get_real_ip(request: Request) -> str:
    """
    Get the real IP address, considering proxy headers.
    Needed when the API runs behind a load balancer.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs, take the first
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return get_remote_address(request)


# Per-endpoint limits, keyed by client IP
RATE_LIMITS = {
    "chat": "30/minute",        # Stateless interview turns
    "analyze": "10/minute",     # Stateless analyses (large model output)
    "session": "20/minute",     # New sessions
    "message": "30/minute",     # Session turns, option picks, analyses
}

# Error messages for rate-limited clients
RATE_LIMIT_MESSAGES = {
    "default": "请求过于频繁，请稍等片刻后再试。",
    "chat": "消息发送过快，请放慢速度。",
    "analyze": "分析请求过多，请一分钟后再试。",
    "session": "新建会话过多，请一分钟后再试。",
}


def get_rate_limit_message(endpoint: str) -> str:
    """Get custom error message for rate limited endpoint"""
    return RATE_LIMIT_MESSAGES.get(endpoint, RATE_LIMIT_MESSAGES["default"])
