import time
from fastapi import Request, HTTPException
from app.core.config import settings

class RateLimiter:
    def __init__(self):
        """
        __init__ Initializes the rate limiter
        """
        self._requests = {}  # Stores scope:IP -> [timestamp1, timestamp2...]

    def check(self, request: Request, scope: str = "default"):
        """
        check Enforces a one-minute sliding window per client IP and scope

        :param request: Incoming request, used for the client address
        :type request: Request
        :param scope: Separates the budgets of different endpoints
        """
        if not settings.RATE_LIMIT_ENABLED:
            return

        client_ip = request.client.host if request.client else "unknown"
        key = f"{scope}:{client_ip}"
        now = time.time()

        # Filter out requests older than 1 minute
        recent = [t for t in self._requests.get(key, []) if now - t < 60]

        # Check count
        if len(recent) >= settings.MAX_REQUESTS_PER_MINUTE:
            self._requests[key] = recent
            raise HTTPException(status_code=429, detail="Too many attempts. Please wait.")

        # Add current request
        recent.append(now)
        self._requests[key] = recent

    def reset(self):
        self._requests.clear()

limiter = RateLimiter()
