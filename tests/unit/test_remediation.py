"""Unit tests for ErrorClassifier."""

import pytest
from unittest.mock import patch

from wizard.models.errors import DeployError, ImagePullError
from wizard.models.remediation import RemediationSuggestion
from wizard.models.status import ErrorCategory, Severity
from wizard.services.remediation import ErrorClassifier, extract_details, find_alternative_port


@pytest.fixture
def env_path(tmp_path):
    return tmp_path / ".env"


@pytest.fixture
def classifier(env_path):
    return ErrorClassifier(env_path)


# ----------------------------------------------------------------------------
# Classification
# ----------------------------------------------------------------------------


@pytest.mark.unit
class TestClassify:
    """Tagged categories win; regex is the fallback."""

    @pytest.mark.parametrize(
        "message, expected",
        [
            ("Bind for 0.0.0.0:16110 failed: port is already allocated", ErrorCategory.PORT_CONFLICT),
            ("listen tcp :8080: bind: address already in use", ErrorCategory.PORT_CONFLICT),
            ("Cannot connect to the Docker daemon. Is the docker daemon running?", ErrorCategory.DOCKER_NOT_RUNNING),
            ("open /var/run/docker.sock: permission denied", ErrorCategory.PERMISSION_ERROR),
            ("container kaspa-node was OOM killed", ErrorCategory.RESOURCE_LIMIT),
            ("write /var/lib/docker: no space left on device", ErrorCategory.DISK_SPACE),
            ("dial tcp 10.0.0.1:443: i/o timeout", ErrorCategory.NETWORK_ERROR),
            ("manifest for kaspanet/foo:latest not found: manifest unknown", ErrorCategory.IMAGE_NOT_FOUND),
            ("something odd happened", ErrorCategory.UNKNOWN),
        ],
    )
    def test_regex_fallback(self, classifier, message, expected):
        assert classifier.classify(message) == expected

    def test_tagged_error_wins_over_message_text(self, classifier):
        """A category assigned at the failure site is not re-guessed."""
        error = ImagePullError(
            "Failed to pull 1 image(s): kaspanet/rusty-kaspad:latest (connection refused)",
            category=ErrorCategory.IMAGE_NOT_FOUND,
        )

        assert classifier.classify(error) == ErrorCategory.IMAGE_NOT_FOUND

    def test_context_hint(self, classifier):
        assert classifier.classify("boom", {"category": "disk_space"}) == ErrorCategory.DISK_SPACE
        assert classifier.classify("boom", {"category": "bogus"}) == ErrorCategory.UNKNOWN


# ----------------------------------------------------------------------------
# Analysis
# ----------------------------------------------------------------------------


@pytest.mark.unit
class TestAnalyze:

    def test_port_conflict_analysis(self, classifier):
        # Arrange
        error = DeployError(
            "Failed to start kaspa-node: port is already allocated",
            service="kaspa-node",
            category=ErrorCategory.PORT_CONFLICT,
            details={"port": 16110},
        )

        with patch('wizard.services.remediation.is_port_available', return_value=True):
            # Act
            analysis = classifier.analyze(error, {"stage": "deploy"})

        # Assert
        assert analysis.category == ErrorCategory.PORT_CONFLICT
        assert analysis.severity == Severity.MEDIUM
        assert analysis.auto_fixable is True
        assert analysis.details["port"] == 16110
        assert analysis.documentation_link
        assert analysis.troubleshooting_steps
        top = analysis.suggestions[0]
        assert top.action == "change_port"
        assert top.params["newPort"] == 16111

    def test_suggestions_sorted_by_priority(self, classifier):
        for category in ErrorCategory:
            suggestions = classifier.suggestions_for(category, {"port": 16110})
            priorities = [s.priority for s in suggestions]
            assert suggestions
            assert priorities == sorted(priorities, reverse=True)
            assert all(s.category == category for s in suggestions)

    def test_docker_socket_permission(self, classifier):
        analysis = classifier.analyze("dial unix /var/run/docker.sock: connect: permission denied")

        assert analysis.details["isDockerSocket"] is True
        assert analysis.suggestions[0].action == "add_to_docker_group"
        assert analysis.auto_fixable is False

    def test_low_memory_prefers_remote_node(self, classifier):
        suggestions = classifier.suggestions_for(ErrorCategory.RESOURCE_LIMIT, {"availableMemoryGB": 2})

        assert suggestions[0].action == "use_remote_node"
        assert suggestions[0].auto_apply is True

    def test_extract_details(self):
        assert extract_details("port 8080 already in use", ErrorCategory.PORT_CONFLICT) == {"port": 8080}
        assert extract_details("needs 512 MB more", ErrorCategory.RESOURCE_LIMIT) == {"memory": "512 MB"}


@pytest.mark.unit
class TestFindAlternativePort:

    def test_first_free_port(self):
        with patch('wizard.services.remediation.is_port_available', side_effect=[False, True]):
            assert find_alternative_port(16110) == 16112

    def test_random_high_port_is_checked(self):
        # Arrange: the +1..+10 range and the first random pick are taken
        answers = [False] * 11 + [True]

        # Act
        with patch('wizard.services.remediation.is_port_available', side_effect=answers) as mock_available:
            port = find_alternative_port(16110)

        # Assert
        assert 30000 <= port < 40000
        assert mock_available.call_count == 12
        assert mock_available.call_args.args == (port,)

    def test_no_free_port(self, classifier):
        with patch('wizard.services.remediation.is_port_available', return_value=False):
            assert find_alternative_port(16110, attempts=5) is None
            suggestions = classifier.suggestions_for(ErrorCategory.PORT_CONFLICT, {"port": 16110})

        actions = [s.action for s in suggestions]
        assert "change_port" not in actions
        assert "identify_process" in actions


# ----------------------------------------------------------------------------
# Apply
# ----------------------------------------------------------------------------


@pytest.mark.unit
class TestApply:
    """Only .env-scoped suggestions are applied."""

    def _suggestion(self, **kwargs):
        values = dict(category=ErrorCategory.PORT_CONFLICT, severity=Severity.MEDIUM, description="fix")
        values.update(kwargs)
        return RemediationSuggestion(**values)

    @pytest.mark.asyncio
    async def test_change_port_finds_key_by_value(self, classifier, env_path):
        # Arrange
        env_path.write_text("KASPA_NETWORK=mainnet\nKASPA_NODE_RPC_PORT=16110\nKASPA_NODE_P2P_PORT=16111\n")
        suggestion = self._suggestion(action="change_port", auto_apply=True, params={"port": 16110, "newPort": 16120})

        # Act
        result = await classifier.apply(suggestion)

        # Assert
        assert result.applied is True
        assert result.retry_advised is True
        assert result.changes == {"KASPA_NODE_RPC_PORT": "16120"}
        assert env_path.read_text().splitlines() == [
            "KASPA_NETWORK=mainnet",
            "KASPA_NODE_RPC_PORT=16120",
            "KASPA_NODE_P2P_PORT=16111",
        ]

    @pytest.mark.asyncio
    async def test_change_port_unknown_setting(self, classifier, env_path):
        env_path.write_text("KASPA_NETWORK=mainnet\n")
        suggestion = self._suggestion(action="change_port", auto_apply=True, params={"port": 9999, "newPort": 10000})

        result = await classifier.apply(suggestion)

        assert result.applied is False
        assert env_path.read_text() == "KASPA_NETWORK=mainnet\n"

    @pytest.mark.asyncio
    async def test_memory_limits_appended(self, classifier, env_path):
        # Arrange
        env_path.write_text("KASPA_NODE_MEMORY_LIMIT=16g\n")
        suggestion = self._suggestion(
            category=ErrorCategory.RESOURCE_LIMIT,
            action="reduce_memory_limits",
            auto_apply=True,
            params={"config": {"KASPA_NODE_MEMORY_LIMIT": "4g", "INDEXER_MEMORY_LIMIT": "1g"}},
        )

        # Act
        result = await classifier.apply(suggestion)

        # Assert
        assert result.applied is True
        assert env_path.read_text().splitlines() == ["KASPA_NODE_MEMORY_LIMIT=4g", "INDEXER_MEMORY_LIMIT=1g"]

    @pytest.mark.asyncio
    async def test_advisory_suggestion_not_applied(self, classifier, env_path):
        suggestion = self._suggestion(action="identify_process", command="lsof -i :16110")

        result = await classifier.apply(suggestion)

        assert result.applied is False
        assert result.message.startswith("Manual action required")
        assert not env_path.exists()

    @pytest.mark.asyncio
    async def test_unknown_action_not_applied_even_if_flagged(self, classifier):
        suggestion = self._suggestion(action="rm_rf_everything", auto_apply=True)

        result = await classifier.apply(suggestion)

        assert result.applied is False
