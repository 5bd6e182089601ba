"""HTTP and database health checks for a deployed topology."""
import logging
from typing import Any, Dict, Mapping, Optional

import requests
from botocore.exceptions import BotoCoreError, ClientError

from tierstack.handles import ComputeHandle, DatabaseHandle, DistributionHandle, Handle
from tierstack.stacks.app_stack import HEALTH_CHECK_PATH

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10


def check_endpoint(
    url: str, session: Optional[requests.Session] = None, timeout: int = DEFAULT_TIMEOUT
) -> Dict[str, Any]:
    """GET ``url`` and report whether it answered 200."""
    http = session or requests
    try:
        response = http.get(url, timeout=timeout)
    except requests.RequestException as exc:
        logger.warning("Health check failed", extra={"url": url, "error": str(exc)})
        return {"url": url, "healthy": False, "error": str(exc)}
    return {"url": url, "healthy": response.status_code == 200, "status_code": response.status_code}


def database_available(rds_client, instance_id: str) -> bool:
    response = rds_client.describe_db_instances(DBInstanceIdentifier=instance_id)
    return response["DBInstances"][0]["DBInstanceStatus"] == "available"


def check_health(
    handles: Mapping[str, Handle],
    session: Optional[requests.Session] = None,
    rds_client=None,
    timeout: int = DEFAULT_TIMEOUT,
) -> Dict[str, Any]:
    """
    Check the load balancer and the distribution on ``/health`` and, when an
    RDS client is given, the database instance status.
    """
    checks: Dict[str, Any] = {}

    compute = handles.get("app")
    if isinstance(compute, ComputeHandle):
        checks["load_balancer"] = check_endpoint(f"{compute.load_balancer_url}{HEALTH_CHECK_PATH}", session, timeout)

    distribution = handles.get("cdn")
    if isinstance(distribution, DistributionHandle):
        checks["distribution"] = check_endpoint(f"{distribution.url}{HEALTH_CHECK_PATH}", session, timeout)

    database = handles.get("database")
    if rds_client is not None and isinstance(database, DatabaseHandle):
        try:
            healthy = database_available(rds_client, database.instance_id)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("Database status check failed", extra={"instance": database.instance_id, "error": str(exc)})
            checks["database"] = {"instance_id": database.instance_id, "healthy": False, "error": str(exc)}
        else:
            checks["database"] = {"instance_id": database.instance_id, "healthy": healthy}

    return {
        "checks": checks,
        "overall_healthy": bool(checks) and all(c["healthy"] for c in checks.values()),
    }
