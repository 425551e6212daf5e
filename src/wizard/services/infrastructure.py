"""Post-deploy infrastructure checks driven by the project's test scripts."""

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Optional

from wizard.config import load_settings
from wizard.models.results import ComponentResults, InfrastructureResults, InfrastructureTest
from wizard.models.state import utcnow
from wizard.services.profiles import needs_database

_LINE_PATTERNS = (
    ("pass", re.compile(r"(?:✓|\bPASS\b:?)\s+([^:]+):\s+(.+)")),
    ("fail", re.compile(r"(?:✗|\bFAIL\b:?)\s+([^:]+):\s+(.+)")),
    ("warn", re.compile(r"(?:⚠|\bWARN\b:?)\s+([^:]+):\s+(.+)")),
)

_SUMMARY_PATTERNS = {
    "total_tests": re.compile(r"Total Tests:\s+(\d+)"),
    "passed": re.compile(r"Passed:\s+(\d+)"),
    "failed": re.compile(r"Failed:\s+(\d+)"),
    "warnings": re.compile(r"Warnings:\s+(\d+)"),
}

_CATEGORY_KEYWORDS = {
    "nginx": (
        ("configuration", ("config", "syntax")),
        ("security", ("security", "header", "ssl", "tls")),
        ("performance", ("rate", "gzip", "compression", "resource")),
        ("routing", ("routing", "connectivity", "upstream")),
    ),
    "timescaledb": (
        ("configuration", ("extension", "database", "initialization")),
        ("database", ("hypertable", "compression", "aggregate", "chunk")),
        ("performance", ("performance", "query", "resource")),
        ("backup", ("backup", "restore")),
    ),
}

_REMEDIATION = {
    "nginx": (
        (("config", "syntax"), "Check nginx configuration for syntax errors. Run: docker exec kaspa-nginx nginx -t"),
        (("ssl", "tls"), "Ensure SSL certificates are properly configured. Check certificate paths in nginx.conf."),
        (("upstream",), "Check that upstream services are running and reachable from nginx."),
        (("connectivity",), "Ensure the nginx container is running and its ports are exposed."),
    ),
    "timescaledb": (
        (("extension",), "Ensure the TimescaleDB extension is installed (CREATE EXTENSION IF NOT EXISTS timescaledb)."),
        (("database",), "Check the database initialization scripts in config/postgres/init/."),
        (("hypertable",), "Verify hypertable creation in the initialization scripts."),
        (("connection",), "Verify POSTGRES_USER and POSTGRES_PASSWORD in .env."),
    ),
}

_FALLBACK_REMEDIATION = {
    "nginx": "Review nginx logs for more details: docker logs kaspa-nginx",
    "timescaledb": "Review TimescaleDB logs for more details: docker logs timescaledb",
}


def _categorize(name: str, component: str) -> str:
    lowered = name.lower()
    for category, keywords in _CATEGORY_KEYWORDS.get(component, ()):
        if any(k in lowered for k in keywords):
            return category
    return "general"


def _remediation(name: str, component: str) -> str:
    lowered = name.lower()
    for keywords, text in _REMEDIATION.get(component, ()):
        if any(k in lowered for k in keywords):
            return text
    return _FALLBACK_REMEDIATION.get(component, "Review test output and logs for more information.")


def parse_test_output(output: str, component: str) -> ComponentResults:
    """Parse ✓/✗/⚠ (or PASS/FAIL/WARN) lines and the trailing summary block."""
    result = ComponentResults(tested=True)

    for line in output.splitlines():
        for status, pattern in _LINE_PATTERNS:
            match = pattern.search(line)
            if not match:
                continue
            name = match.group(1).strip()
            result.tests.append(
                InfrastructureTest(
                    category=_categorize(name, component),
                    name=name,
                    status=status,
                    message=match.group(2).strip(),
                    remediation=_remediation(name, component) if status == "fail" else None,
                )
            )
            break

    result.total_tests = len(result.tests)
    result.passed = sum(1 for t in result.tests if t.status == "pass")
    result.failed = sum(1 for t in result.tests if t.status == "fail")
    result.warnings = sum(1 for t in result.tests if t.status == "warn")

    # Script summary wins over line counts when present
    for field, pattern in _SUMMARY_PATTERNS.items():
        match = pattern.search(output)
        if match:
            setattr(result, field, int(match.group(1)))

    return result


class InfrastructureValidator:
    """Runs test-nginx.sh (always) and test-timescaledb.sh (database profiles)."""

    SCRIPTS = {"nginx": "test-nginx.sh", "timescaledb": "test-timescaledb.sh"}

    def __init__(self, project_root: Optional[Path] = None, timeout: float = 120.0):
        self.logger = logging.getLogger("wizard.infrastructure")
        self.project_root = Path(project_root or load_settings().project_root)
        self.timeout = timeout

    def _execution_failure(self, component: str, reason: str) -> ComponentResults:
        self.logger.error(f"Failed to execute {component} tests: {reason}")
        return ComponentResults(
            tested=True,
            failed=1,
            tests=[
                InfrastructureTest(
                    category="execution",
                    name="Test Script Execution",
                    status="fail",
                    message=f"Failed to execute {component} tests: {reason}",
                )
            ],
        )

    async def _run_script(self, component: str) -> ComponentResults:
        script = self.project_root / self.SCRIPTS[component]
        if not script.exists():
            self.logger.info(f"{script.name} not found, skipping {component} tests")
            return ComponentResults(tested=False)

        try:
            process = await asyncio.create_subprocess_exec(
                "bash",
                str(script),
                "--no-cleanup",
                cwd=str(self.project_root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            return self._execution_failure(component, str(e))

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return self._execution_failure(component, f"timed out after {self.timeout:.0f}s")

        # Scripts exit non-zero when a check fails; the output is still parsed
        return parse_test_output(stdout.decode("utf-8", errors="replace"), component)

    async def validate_infrastructure(self, profiles: list[str]) -> InfrastructureResults:
        results = InfrastructureResults(timestamp=utcnow().isoformat())
        results.nginx = await self._run_script("nginx")
        if needs_database(profiles):
            results.timescaledb = await self._run_script("timescaledb")

        failed = results.nginx.failed + results.timescaledb.failed
        warnings = results.nginx.warnings + results.timescaledb.warnings
        if failed > 0:
            results.overall_status = "unhealthy"
        elif warnings > 0:
            results.overall_status = "degraded"
        else:
            results.overall_status = "healthy"

        self.logger.info(f"Infrastructure validation: {results.overall_status}")
        return results

    def get_validation_summary(self, results: InfrastructureResults) -> dict[str, Any]:
        def pass_rate(passed: int, total: int) -> int:
            return round(passed / total * 100) if total > 0 else 0

        def component(c: ComponentResults) -> dict[str, Any]:
            return {
                "status": "healthy" if c.failed == 0 else "unhealthy",
                "tested": c.tested,
                "passRate": pass_rate(c.passed, c.total_tests),
            }

        total = results.nginx.total_tests + results.timescaledb.total_tests
        passed = results.nginx.passed + results.timescaledb.passed
        return {
            "overallStatus": results.overall_status,
            "totalTests": total,
            "totalPassed": passed,
            "totalFailed": results.nginx.failed + results.timescaledb.failed,
            "totalWarnings": results.nginx.warnings + results.timescaledb.warnings,
            "passRate": pass_rate(passed, total),
            "components": {
                "nginx": component(results.nginx),
                "timescaledb": component(results.timescaledb),
            },
            "timestamp": results.timestamp,
        }

    def failed_tests(self, results: InfrastructureResults) -> list[InfrastructureTest]:
        return [t for c in (results.nginx, results.timescaledb) for t in c.tests if t.status == "fail"]
