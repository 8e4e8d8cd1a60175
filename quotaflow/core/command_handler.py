"""Command Handler: Orchestrates CLI command execution.

Receives commands from the main entry point (main.py), delegates the work to
the GenerationService and reports results and failures through the
UserInterface. Library errors stop here and become error panels.
"""

import json
import logging
from typing import Any, Dict, Optional

from quotaflow.core.exceptions import AllCredentialsExhaustedError, CallTimeoutError, QuotaflowError
from quotaflow.core.services.generation_service import GenerationService
from quotaflow.domain.interfaces.user_interface import UserInterface

logger = logging.getLogger(__name__)


class CommandHandler:
    """Handles incoming commands and delegates to the generation service."""

    def __init__(self, generation_service: GenerationService, ui: UserInterface):
        self.generation_service = generation_service
        self.ui = ui

    def handle_stats(self) -> bool:
        """Handles the 'stats' command."""
        logger.info("Handling 'stats' command")
        self.ui.display_usage_stats(self.generation_service.usage_stats())
        return True

    async def handle_generate_text(
        self,
        prompt: str,
        model: Optional[str] = None,
        system: Optional[str] = None,
    ) -> bool:
        """Handles the 'generate-text' command. Returns False on failure."""
        logger.info(f"Handling 'generate-text' command with model: {model or 'default'}")
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            result = await self.generation_service.generate_text(messages, model=model)
        except QuotaflowError as e:
            logger.error(f"generate-text failed: {e}")
            self.ui.display_error(f"Text generation failed: {e}")
            return False

        response = result.value
        self.ui.display_output(response.content, title=response.model_name or result.target or "Text")
        self.ui.display_info(
            f"credential #{result.credential_index} · {result.attempts} attempt(s) · {result.elapsed_s:.2f}s"
        )
        return True

    async def handle_render_media(
        self,
        endpoint: str,
        payload_json: str,
        shard_id: Optional[int] = None,
        timeout_s: Optional[float] = None,
        record_id: Optional[str] = None,
    ) -> bool:
        """Handles the 'render-media' command. Returns False on failure."""
        logger.info(f"Handling 'render-media' command for endpoint: {endpoint}")
        try:
            payload = json.loads(payload_json)
        except json.JSONDecodeError as e:
            self.ui.display_error(f"Payload is not valid JSON: {e}")
            return False
        if not isinstance(payload, dict):
            self.ui.display_error("Payload must be a JSON object.")
            return False

        try:
            outcome = await self.generation_service.render_media(
                endpoint, payload, shard_id=shard_id, timeout_s=timeout_s,
            )
        except CallTimeoutError as e:
            self.ui.display_warning(f"Gave up waiting: {e}. The upstream job may still complete.")
            return False
        except AllCredentialsExhaustedError as e:
            self.ui.display_error(f"No usable media credential: {e}")
            return False
        except QuotaflowError as e:
            logger.error(f"render-media failed: {e}")
            self.ui.display_error(f"Rendering failed: {e}")
            return False

        lines = [f"- {item}" for item in outcome.deliverables]
        self.ui.display_output("\n".join(lines), title=f"Task {outcome.task_id}")
        self.ui.display_info(
            f"credential #{outcome.credential_index} · {outcome.polls} poll(s) · {outcome.elapsed_s:.1f}s"
        )

        if record_id:
            def _store(record: Dict[str, Any]) -> Dict[str, Any]:
                renders = record.setdefault("renders", [])
                renders.append({
                    "endpoint": endpoint,
                    "task_id": outcome.task_id,
                    "deliverables": outcome.deliverables,
                })
                return record

            try:
                await self.generation_service.update_record(record_id, _store)
            except QuotaflowError as e:
                self.ui.display_warning(f"Result not saved to record '{record_id}': {e}")
                return False
        return True
