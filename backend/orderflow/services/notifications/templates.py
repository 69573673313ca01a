"""
Notification template engine with Jinja2 for customer status messages.

Each notification type has one text template under
orderflow/templates/notifications/<type>.txt. Messages are rendered with
Markdown markup for the messaging transport.
"""

from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import (
    Environment,
    FileSystemLoader,
    Template,
    TemplateError,
    TemplateNotFound,
)

from orderflow.core.logging import get_logger
from orderflow.services.orders.enums import NotificationType

logger = get_logger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent.parent.parent / "templates" / "notifications"

REQUIRED_CONTEXT = ("order_number", "store_name")

_MARKDOWN_SPECIAL = ("_", "*", "`", "[")


class TemplateEngineError(Exception):
    """Base exception for template engine errors."""

    def __init__(self, message: str, template_name: Optional[str] = None):
        super().__init__(message)
        self.template_name = template_name


class TemplateNotFoundError(TemplateEngineError):
    """Raised when a template cannot be found."""


class TemplateRenderError(TemplateEngineError):
    """Raised when template rendering fails."""


class TemplateValidationError(TemplateEngineError):
    """Raised when the rendering context is missing required values."""


class TemplateEngine:
    """
    Template engine for rendering notification messages.

    Templates are cached by Jinja2; custom filters format money and escape
    Markdown in user supplied values.
    """

    def __init__(self, template_dir: Optional[str] = None, cache_size: int = 50):
        """
        Initialize the template engine.

        Args:
            template_dir: Directory containing template files. Defaults to the
                          packaged notification templates.
            cache_size: Size of the template cache.
        """
        self.template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,
            cache_size=cache_size,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=False,
        )
        self.env.filters["money"] = self._format_money
        self.env.filters["md"] = self._escape_markdown

    def render(self, notification_type: NotificationType, context: Dict[str, Any]) -> str:
        """
        Render the message for a notification type.

        Args:
            notification_type: Which status message to render
            context: Order values (order_number, store_name, total_amount, currency, ...)

        Returns:
            Rendered message text

        Raises:
            TemplateValidationError: If required context is missing
            TemplateNotFoundError: If the template file is missing
            TemplateRenderError: If rendering fails
        """
        template_name = f"{notification_type.value}.txt"
        self._validate_context(context, template_name)

        try:
            template = self._load_template(template_name)
            return template.render(**context).strip()
        except TemplateNotFound as e:
            logger.error("Notification template not found", template_name=template_name)
            raise TemplateNotFoundError(
                f"Notification template not found: {template_name}",
                template_name=template_name,
            ) from e
        except TemplateError as e:
            logger.error(
                "Notification template rendering failed",
                template_name=template_name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TemplateRenderError(
                f"Failed to render notification template: {e}",
                template_name=template_name,
            ) from e

    def _load_template(self, template_name: str) -> Template:
        return self.env.get_template(template_name)

    def _validate_context(self, context: Dict[str, Any], template_name: str) -> None:
        missing = [key for key in REQUIRED_CONTEXT if not context.get(key)]
        if missing:
            raise TemplateValidationError(
                f"Missing template context: {', '.join(missing)}",
                template_name=template_name,
            )

    @staticmethod
    def _format_money(value: Any) -> str:
        try:
            return f"{Decimal(str(value)).quantize(Decimal('0.01'))}"
        except (InvalidOperation, ValueError):
            return str(value)

    @staticmethod
    def _escape_markdown(value: Any) -> str:
        text = str(value)
        for char in _MARKDOWN_SPECIAL:
            text = text.replace(char, f"\\{char}")
        return text
