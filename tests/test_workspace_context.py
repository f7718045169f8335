"""Tests for WorkspaceContext: lazy services, isolation and cleanup."""

import json

from tomos.services.edit_service import SurgicalEditService
from tomos.services.workspace_context import WorkspaceContext
from tomos.types.core import ServerState


class TestWorkspaceContext:
    """Tests for WorkspaceContext."""

    def test_path_is_resolved(self, workspace):
        ctx = WorkspaceContext(str(workspace / "." / "sub" / ".."))
        assert ctx.path == str(workspace.resolve())
        assert ctx.name == workspace.name

    def test_services_are_lazy_and_cached(self, context):
        assert context._lsp_manager is None
        service = context.get_edit_service()
        assert isinstance(service, SurgicalEditService)
        assert context.get_edit_service() is service
        assert context.get_lsp_manager() is service._lsp_manager

    def test_settings_loaded_from_workspace(self, workspace):
        (workspace / ".tomos").mkdir()
        (workspace / ".tomos" / "config.json").write_text(json.dumps({"settings": {"request_timeout": 7}}))
        ctx = WorkspaceContext(str(workspace))
        assert ctx.get_lsp_manager().settings.request_timeout == 7.0

    def test_cleanup_stops_servers(self, context):
        context.get_edit_service().get_all_symbols("calc.py")
        client = context.get_lsp_manager().get_client("python")
        context.cleanup()
        assert client.state is ServerState.SHUT_DOWN
        assert context._lsp_manager is None
        assert context._edit_service is None

    def test_contexts_are_isolated(self, tmp_path, settings, clock):
        """Two roots never share a manager or a server."""
        a, b = tmp_path / "a", tmp_path / "b"
        a.mkdir()
        b.mkdir()
        with WorkspaceContext(str(a), settings=settings, clock=clock) as ctx_a:
            with WorkspaceContext(str(b), settings=settings, clock=clock) as ctx_b:
                assert ctx_a.get_lsp_manager() is not ctx_b.get_lsp_manager()
                assert ctx_a.get_lsp_manager().root == str(a.resolve())

    def test_to_dict(self, context):
        data = context.to_dict()
        assert data["path"] == context.path
        assert data["lsp"] is None
        context.get_edit_service().get_all_symbols("calc.py")
        assert "python" in context.to_dict()["lsp"]["running_servers"]
