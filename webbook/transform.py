"""Body rewriting between fetch and extraction."""
import logging
import re
from typing import Any, Dict, Optional

from webbook.errors import NoContentError, TemplateError

logger = logging.getLogger(__name__)


class ContentTransformer:
    """
    Run a source's post-processing script and source regex over a raw body.

    The script always runs first; its output is what the regex sees. Script
    failures propagate as ScriptError and abort the stage.
    """

    def __init__(self, script_engine=None):
        self.script_engine = script_engine

    async def apply(
        self,
        body: str,
        *,
        script: Optional[str] = None,
        source_regex: Optional[str] = None,
        bindings: Optional[Dict[str, Any]] = None,
    ) -> str:
        if script and script.strip():
            if self.script_engine is None:
                raise TemplateError("Source defines a script but no script engine is configured")
            body = await self.script_engine.evaluate_async(script, body, bindings)

        if source_regex and source_regex.strip():
            body = self.extract(body, source_regex)

        return body

    @staticmethod
    def extract(body: str, source_regex: str) -> str:
        """Replace the body with the first match of the source regex."""
        try:
            pattern = re.compile(source_regex, re.S)
        except re.error as e:
            raise TemplateError(f"Invalid source regex {source_regex!r}: {e}") from e

        match = pattern.search(body)
        if match is None:
            raise NoContentError(f"Source regex matched nothing: {source_regex!r}")

        if pattern.groups:
            return match.group(1) or ""
        return match.group(0)
