"""
Tests for the application lifespan
"""

from unittest.mock import MagicMock, patch

import pytest

from smokefree.services.startup import _warm_up_database, lifespan


class TestWarmUp:
    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self):
        with patch("smokefree.services.startup.get_supabase_client") as mock_client:
            assert await _warm_up_database(retry_delay=0) is True
        mock_client.assert_called_once()

    @pytest.mark.asyncio
    async def test_degraded_mode_after_retries(self):
        with (
            patch(
                "smokefree.services.startup.get_supabase_client",
                side_effect=RuntimeError("connection refused"),
            ) as mock_client,
            patch("smokefree.services.startup.capture_error") as mock_capture,
        ):
            assert await _warm_up_database(max_retries=2, retry_delay=0) is False

        assert mock_client.call_count == 2
        mock_capture.assert_called_once()
        assert mock_capture.call_args.kwargs["tags"]["degraded_mode"] == "true"


class TestLifespan:
    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self):
        with (
            patch("smokefree.services.startup.Config") as mock_config,
            patch("smokefree.services.startup._warm_up_database", return_value=True) as mock_warmup,
            patch("smokefree.services.startup.start_scheduler") as mock_start,
            patch("smokefree.services.startup.stop_scheduler") as mock_stop,
            patch("smokefree.services.startup.cleanup_supabase_client") as mock_cleanup,
        ):
            mock_config.validate_critical_env_vars.return_value = (True, [])

            async with lifespan(MagicMock()):
                mock_warmup.assert_awaited_once()
                mock_start.assert_called_once()
                mock_stop.assert_not_called()

            mock_stop.assert_called_once()
            mock_cleanup.assert_called_once()

    @pytest.mark.asyncio
    async def test_missing_env_vars_abort_startup(self):
        with (
            patch("smokefree.services.startup.Config") as mock_config,
            patch("smokefree.services.startup.start_scheduler") as mock_start,
        ):
            mock_config.validate_critical_env_vars.return_value = (False, ["STRIPE_SECRET_KEY"])

            with pytest.raises(RuntimeError, match="STRIPE_SECRET_KEY"):
                async with lifespan(MagicMock()):
                    pass

        mock_start.assert_not_called()
