from backstube.core.ratelimit.bucket import Permit, RateBucket
from backstube.core.ratelimit.limiter import RateLimiter, RateLimiterMetrics

__all__ = ["Permit", "RateBucket", "RateLimiter", "RateLimiterMetrics"]
