"""
Prompt template manager.

Loads Jinja2 templates from config/prompts/ and renders them with strict
variable checking, so a template referencing a field the caller did not
provide fails loudly instead of sending a half-empty prompt to the LLM.
"""

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, UndefinedError

from src.utils.logging import get_logger

logger = get_logger(__name__)


class PromptTemplateError(Exception):
    """Base exception for prompt template errors."""


class TemplateNotFoundError(PromptTemplateError):
    """Raised when a template file is not found."""


class TemplateRenderError(PromptTemplateError):
    """Raised when template rendering fails."""


class PromptManager:
    """
    Manager for LLM prompt templates.

    Usage:
        manager = PromptManager(config_dir / "prompts")
        prompt = manager.render("novelty_screening", invention=..., candidates=...)
    """

    def __init__(self, prompts_dir: Path | None = None):
        """
        Args:
            prompts_dir: Path to prompts directory.
                Defaults to <config dir>/prompts.
        """
        if prompts_dir is None:
            from src.utils.config import get_config_dir

            prompts_dir = get_config_dir() / "prompts"

        self._prompts_dir = Path(prompts_dir)
        self._env: Environment | None = None

    @property
    def prompts_dir(self) -> Path:
        return self._prompts_dir

    def _get_environment(self) -> Environment:
        if self._env is None:
            if not self._prompts_dir.exists():
                raise TemplateNotFoundError(f"Prompts directory not found: {self._prompts_dir}")

            self._env = Environment(
                loader=FileSystemLoader(str(self._prompts_dir)),
                trim_blocks=True,
                lstrip_blocks=True,
                # Prompts are not HTML
                autoescape=False,
                undefined=StrictUndefined,
            )

        return self._env

    def template_exists(self, template_name: str) -> bool:
        return (self._prompts_dir / f"{template_name}.j2").exists()

    def list_templates(self) -> list[str]:
        """List template names (without .j2 extension)."""
        if not self._prompts_dir.exists():
            return []
        return sorted(p.stem for p in self._prompts_dir.glob("*.j2"))

    def render(self, template_name: str, **kwargs: Any) -> str:
        """
        Render a prompt template with given variables.

        Args:
            template_name: Template name (without .j2 extension).
            **kwargs: Variables to inject into the template.

        Returns:
            Rendered prompt string.

        Raises:
            TemplateNotFoundError: If template doesn't exist.
            TemplateRenderError: If rendering fails (e.g., missing variables).
        """
        env = self._get_environment()
        try:
            template = env.get_template(f"{template_name}.j2")
        except TemplateNotFound as e:
            raise TemplateNotFoundError(
                f"Template not found: {template_name}.j2 (searched in {self._prompts_dir})"
            ) from e

        try:
            rendered = template.render(**kwargs)
        except UndefinedError as e:
            raise TemplateRenderError(f"Template '{template_name}' rendering failed: {e}") from e

        logger.debug(
            "Template rendered",
            template=template_name,
            vars=list(kwargs.keys()),
            length=len(rendered),
        )
        return rendered
