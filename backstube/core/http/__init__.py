from backstube.core.http.client import GLOBAL_BUCKET, RestClient
from backstube.core.http.route import Route

__all__ = ["GLOBAL_BUCKET", "RestClient", "Route"]
