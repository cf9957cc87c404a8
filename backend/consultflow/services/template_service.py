# backend/consultflow/services/template_service.py
"""
Template rendering service for Consultflow.

Provides centralized template rendering using Jinja2 for the transactional
emails sent through the notification sink.
"""

from datetime import datetime
from decimal import Decimal
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from ..core.config import settings

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent.parent / "templates"


class TemplateService:
    """Jinja2 environment plus the filters and common context every email uses."""

    def __init__(self, template_dir: Optional[Path] = None):
        self.env = Environment(
            loader=FileSystemLoader(template_dir or TEMPLATE_DIR),
            autoescape=select_autoescape(["html"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._register_custom_filters()

    def _register_custom_filters(self) -> None:
        def money(value: Any, currency: str = "") -> str:
            """Format a number as an amount with currency code."""
            amount = Decimal(str(value or 0))
            return f"{amount:,.2f} {currency}".strip()

        def format_datetime(value: Any, format_str: str = "%d/%m/%Y %H:%M") -> str:
            if isinstance(value, str):
                return value  # Already formatted
            if isinstance(value, datetime):
                return value.strftime(format_str)
            return ""

        self.env.filters["money"] = money
        self.env.filters["format_datetime"] = format_datetime

    def get_common_context(self) -> Dict[str, Any]:
        return {
            "brand_name": "Consultflow",
            "current_year": datetime.now().year,
            "base_url": settings.public_base_url,
        }

    def render_template(self, template_name: str, context: Optional[Dict[str, Any]] = None, **kwargs) -> str:
        """Render ``template_name`` with common context, ``context`` and ``kwargs`` (later wins)."""
        full_context = {**self.get_common_context(), **(context or {}), **kwargs}
        template = self.env.get_template(template_name)
        return template.render(full_context)

    def render_string(self, template_string: str, context: Optional[Dict[str, Any]] = None) -> str:
        return self.env.from_string(template_string).render({**self.get_common_context(), **(context or {})})
