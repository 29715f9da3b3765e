"""Route surface checks against the generated OpenAPI schema."""

import pytest

from deenhub.main import app


@pytest.fixture(scope="module")
def openapi_paths():
    return app.openapi()["paths"]


class TestRouteSurface:
    """Every admin and public operation is mounted."""

    @pytest.mark.parametrize(
        "path,method",
        [
            ("/api/v1/sync/{domain}", "post"),
            ("/api/v1/sync/runs", "get"),
            ("/api/v1/sync/runs/{run_id}", "get"),
            ("/api/v1/sync/summary", "get"),
            ("/api/v1/sync/schedules", "get"),
            ("/api/v1/jobs", "get"),
            ("/api/v1/jobs/stats", "get"),
            ("/api/v1/jobs/{job_id}", "get"),
            ("/api/v1/jobs/{job_id}", "delete"),
            ("/api/v1/jobs/{job_id}/pause", "post"),
            ("/api/v1/jobs/{job_id}/resume", "post"),
            ("/api/v1/jobs/{job_id}/cancel", "post"),
            ("/api/v1/translations/trigger", "post"),
            ("/api/v1/translations/retry", "post"),
            ("/api/v1/translations/stats", "get"),
            ("/api/v1/translations/jobs", "get"),
            ("/api/v1/monitoring/rate-limits", "get"),
            ("/api/v1/monitoring/rate-limits", "post"),
            ("/api/v1/monitoring/rate-limits/status", "get"),
            ("/api/v1/monitoring/rate-limits/{rule_id}", "patch"),
            ("/api/v1/monitoring/rate-limits/{rule_id}", "delete"),
            ("/api/v1/monitoring/ip-blocks", "get"),
            ("/api/v1/monitoring/ip-blocks", "post"),
            ("/api/v1/monitoring/ip-blocks/count", "get"),
            ("/api/v1/monitoring/ip-blocks/top", "get"),
            ("/api/v1/monitoring/ip-blocks/{ip_address}", "delete"),
            ("/api/v1/monitoring/endpoints", "get"),
            ("/api/v1/monitoring/ips", "get"),
            ("/api/v1/monitoring/logs", "get"),
            ("/api/v1/monitoring/analytics", "get"),
            ("/api/v1/finance/gold-prices/latest", "get"),
            ("/api/v1/finance/gold-prices/history", "get"),
            ("/health", "get"),
            ("/health/detailed", "get"),
        ],
    )
    def test_operation_exists(self, openapi_paths, path, method):
        assert method in openapi_paths.get(path, {}), f"{method.upper()} {path} missing"

    def test_sync_domains_enumerated(self, openapi_paths):
        parameters = openapi_paths["/api/v1/sync/{domain}"]["post"]["parameters"]
        domain = next(p for p in parameters if p["name"] == "domain")
        schema = domain["schema"]
        if "$ref" in schema:
            name = schema["$ref"].rsplit("/", 1)[-1]
            schema = app.openapi()["components"]["schemas"][name]
        assert set(schema["enum"]) == {"quran", "prayer", "audio", "finance", "hadith"}

    def test_admin_routes_declare_api_key(self, openapi_paths):
        for path, operations in openapi_paths.items():
            if not path.startswith(("/api/v1/sync", "/api/v1/jobs", "/api/v1/translations", "/api/v1/monitoring")):
                continue
            for method, operation in operations.items():
                assert operation.get("security"), f"{method.upper()} {path} is not guarded"

    def test_public_routes_have_no_security(self, openapi_paths):
        for path in ("/api/v1/finance/gold-prices/latest", "/health"):
            assert not openapi_paths[path]["get"].get("security")
