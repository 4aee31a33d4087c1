"""
An MkDocs plugin that merges grouped <script>/<link> tags into combo-server URLs
"""

import logging
from typing import Dict, Optional

from mkdocs.config import config_options as c
from mkdocs.config.defaults import MkDocsConfig
from mkdocs.exceptions import PluginError
from mkdocs.plugins import BasePlugin
from mkdocs.structure.pages import Page

from plugins.combo.combo import (
    COMBINE_ATTRIBUTE,
    DEFAULT_BASE_PATH,
    DEFAULT_SEPARATOR,
    Combo,
    ComboResult,
)

# Use MkDocs' recommended plugin logger namespace so debug logs appear only with `--verbose`.
logger = logging.getLogger(f"mkdocs.plugins.{__name__}")


class ComboPlugin(BasePlugin):
    """MkDocs plugin that combines `data-combo` grouped assets in rendered HTML.

    Configuration options (all optional):
    - enabled (bool): Turn the rewrite on or off.
    - base_path (str): Path prefix of the combo endpoint (default `/c/=`).
    - separator (str): Joiner between combined file paths (default `,`).
    - host (str): Host to use when the first file of a group is site-relative.
    - combine_attribute (str): Attribute naming the group (default `data-combo`).
    - selectors (dict): Regex per tag type (`script`, `link`) replacing the defaults.
    - debug (bool): Trace every rewrite at debug level.
    """

    config_scheme = (
        ('enabled',           c.Type(bool, default=True)),
        ('base_path',         c.Type(str, default=DEFAULT_BASE_PATH)),
        ('separator',         c.Type(str, default=DEFAULT_SEPARATOR)),
        ('host',              c.Type(str, default="")),
        ('combine_attribute', c.Type(str, default=COMBINE_ATTRIBUTE)),
        ('selectors',         c.Type(dict, default={})),
        ('debug',             c.Type(bool, default=False)),
    )

    def __init__(self):
        super().__init__()
        self.combo: Optional[Combo] = None
        # Per-build counters, reported in on_post_build.
        self._stats: Dict[str, int] = {"pages": 0, "groups": 0, "skipped": 0}

    # -------------------------------
    # Helpers
    # -------------------------------

    def _dbg(self, msg: str, *args) -> None:
        """Debug log gated by plugin config."""
        if not self.config.get("debug", False):
            return

        logger.debug("[combo] " + msg, *args)

    def _build_combo(self) -> Combo:
        try:
            return Combo(
                base_path=self.config.get("base_path", DEFAULT_BASE_PATH),
                separator=self.config.get("separator", DEFAULT_SEPARATOR),
                selectors=self.config.get("selectors") or {},
                combine_attribute=self.config.get("combine_attribute", COMBINE_ATTRIBUTE),
                host=self.config.get("host", ""),
            )
        except ValueError as e:
            raise PluginError(f"[combo] invalid configuration: {e}") from e

    def _rewrite(self, html: str, source: str) -> str:
        """Run the combo rewrite on one HTML document and record what happened."""
        if not html or not self.config.get("enabled", True):
            return html

        if self.combo is None:
            self.combo = self._build_combo()

        result: ComboResult = self.combo.process_with_report(html)

        for skipped in result.skipped:
            logger.warning("[combo] %s: tag not combined (%s): %s", source, skipped.reason, skipped.tag.raw)
        for group in result.combined:
            self._dbg("%s: %s group '%s' <- %s", source, group.tag_type, group.name, ", ".join(group.files))

        if result.combined:
            self._stats["pages"] += 1
        self._stats["groups"] += len(result.combined)
        self._stats["skipped"] += len(result.skipped)
        return result.output

    # -------------------------------
    # MkDocs hooks
    # -------------------------------

    def on_config(self, config: MkDocsConfig, **kwargs) -> MkDocsConfig:
        """Validate options early so a bad selector fails the build before rendering."""
        self.combo = self._build_combo()
        self._stats = {"pages": 0, "groups": 0, "skipped": 0}
        self._dbg(
            "[config] base_path=%s separator=%s host=%s selectors=%s",
            self.combo.base_path,
            self.combo.separator,
            self.combo.host,
            ",".join(sorted(self.config.get("selectors") or {})),
        )
        return config

    def on_post_page(self, output: str, *, page: Page, config: MkDocsConfig) -> Optional[str]:
        """Combine assets in rendered Markdown pages."""
        src_path = getattr(getattr(page, "file", None), "src_path", "") or getattr(page, "url", "")
        return self._rewrite(output, src_path)

    def on_post_template(self, output_content: str, *, template_name: str, config: MkDocsConfig) -> Optional[str]:
        """Combine assets in theme templates rendered outside of pages (404.html, etc.)."""
        return self._rewrite(output_content, template_name)

    def on_post_build(self, *, config: MkDocsConfig) -> None:
        """Log a one-line summary of the build."""
        if not self.config.get("enabled", True):
            return
        logger.info(
            "[combo] combined %d group(s) on %d page(s), %d tag(s) skipped",
            self._stats["groups"],
            self._stats["pages"],
            self._stats["skipped"],
        )
