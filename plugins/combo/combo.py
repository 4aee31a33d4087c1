"""
Merge groups of <script>/<link> tags into single combo-server URLs.

Tags opt in with a `data-combo="<group>"` attribute. Every tag of a group is
removed from the markup and the last one is replaced by a single tag whose URL
asks the combo endpoint for all of the group's files at once:

    <script src="/a.js" data-combo="app"></script>
    <script src="/b.js" data-combo="app"></script>

becomes

    <script src="///c/=/a.js,/b.js"></script>
"""

import re
import urllib.parse
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple, Union

DEFAULT_BASE_PATH = "/c/="
DEFAULT_SEPARATOR = ","
COMBINE_ATTRIBUTE = "data-combo"

# Tag type -> attribute holding the resource reference.
RESOURCE_KEYS: Dict[str, str] = {
    "script": "src",
    "link": "href",
}

# Groups: 1) tag name, 2) attribute string, 3) script body (ignored)
DEFAULT_SELECTORS: Dict[str, re.Pattern] = {
    "script": re.compile(r"<(script)\b([^>]*)>(.*?)</script\s*>", re.IGNORECASE | re.DOTALL),
    "link": re.compile(r"<(link)\b([^>]*?)/?>", re.IGNORECASE),
}

TEMPLATES: Dict[str, str] = {
    "script": '<script {attributes} src="{src}"></script>',
    "link": '<link {attributes} href="{src}"/>',
}

ATTRIBUTE_PATTERN = re.compile(
    r"""([^=<>"'\s/]+)\s*(?:=\s*(?:"([^"]*)"|'([^']*)'|([^\s"'>]+)))?"""
)

# Characters encodeURI() leaves alone on top of quote()'s always-safe set.
URI_SAFE = ";,/?:@&=+$!*'()#"

SKIP_NO_RESOURCE = "missing resource reference"
SKIP_EMPTY_GROUP = "empty combine group"

AttributeMap = Dict[str, Union[str, bool]]


@dataclass(frozen=True)
class Tag:
    """A tag matched in the markup, with the offsets of `raw` in that markup."""

    name: str
    attributes: AttributeMap
    raw: str
    start: int = 0
    end: int = 0


@dataclass(frozen=True)
class SkippedTag:
    tag: Tag
    reason: str


@dataclass(frozen=True)
class CombinedGroup:
    tag_type: str
    name: str
    files: List[str]
    html: str


@dataclass
class ComboResult:
    """Rewritten markup plus what happened on the way."""

    output: str
    combined: List[CombinedGroup] = field(default_factory=list)
    skipped: List[SkippedTag] = field(default_factory=list)


def parse_attributes(attr_string: Optional[str]) -> AttributeMap:
    """Parse `name="value"` pairs; valueless attributes map to True.

    Best effort: anything that does not look like an attribute is ignored and a
    repeated name keeps its last value.
    """
    result: AttributeMap = {}
    if not attr_string:
        return result

    for match in ATTRIBUTE_PATTERN.finditer(attr_string):
        name, double, single, bare = match.groups()
        result[name] = double or single or bare or True
    return result


def find_tags(markup: str, pattern: Union[str, re.Pattern]) -> List[Tag]:
    """Return every tag matching `pattern`, in document order."""
    if isinstance(pattern, str):
        pattern = re.compile(pattern)

    tags: List[Tag] = []
    for match in pattern.finditer(markup):
        tags.append(
            Tag(
                name=match.group(1),
                attributes=parse_attributes(match.group(2) or ""),
                raw=match.group(0),
                start=match.start(),
                end=match.end(),
            )
        )
    return tags


def group_tags(
    tags: Iterable[Tag],
    resource_key: str,
    combine_attribute: str = COMBINE_ATTRIBUTE,
    skipped: Optional[List[SkippedTag]] = None,
) -> Dict[str, List[Tag]]:
    """Bucket tags by their combine group, keeping source order.

    Grouped tags are returned without the combine attribute. Tags that cannot
    be grouped stay out of the result; if `skipped` is given, the ones that
    asked for a group but cannot join one are appended to it.
    """
    groups: Dict[str, List[Tag]] = {}

    for tag in tags:
        combine_name = tag.attributes.get(combine_attribute)
        if combine_name is None:
            continue

        resource = tag.attributes.get(resource_key)
        reason = None
        if combine_name is True:
            reason = SKIP_EMPTY_GROUP
        elif not isinstance(resource, str):
            reason = SKIP_NO_RESOURCE
        if reason:
            if skipped is not None:
                skipped.append(SkippedTag(tag, reason))
            continue

        attributes = {k: v for k, v in tag.attributes.items() if k != combine_attribute}
        grouped = Tag(tag.name, attributes, tag.raw, tag.start, tag.end)
        groups.setdefault(combine_name, []).append(grouped)

    return groups


def _apply_edits(markup: str, edits: List[Tuple[int, int, str]]) -> str:
    """Replace non-overlapping (start, end) spans of `markup`."""
    if not edits:
        return markup

    parts: List[str] = []
    pos = 0
    for start, end, replacement in sorted(edits):
        parts.append(markup[pos:start])
        parts.append(replacement)
        pos = end
    parts.append(markup[pos:])
    return "".join(parts)


class Combo:
    """Rewrites markup so grouped script/link tags hit the combo endpoint once.

    Args:
        base_path: Path prefix of the combo endpoint, e.g. `/c/=`.
        separator: Joiner between the combined file paths.
        selectors: Per tag type regex overriding `DEFAULT_SELECTORS`.
        combine_attribute: Attribute naming a tag's group.
        host: Host used when the first file of a group has none.
    """

    def __init__(
        self,
        base_path: str = DEFAULT_BASE_PATH,
        separator: str = DEFAULT_SEPARATOR,
        selectors: Optional[Dict[str, Union[str, re.Pattern]]] = None,
        combine_attribute: str = COMBINE_ATTRIBUTE,
        host: str = "",
    ):
        self.base_path = base_path
        self.separator = separator
        self.combine_attribute = combine_attribute
        self.host = host
        self.selectors: Dict[str, re.Pattern] = dict(DEFAULT_SELECTORS)

        for tag_type, pattern in (selectors or {}).items():
            if tag_type not in RESOURCE_KEYS:
                raise ValueError(
                    f"unknown tag type '{tag_type}' in selectors "
                    f"(expected one of: {', '.join(RESOURCE_KEYS)})"
                )
            if isinstance(pattern, str):
                try:
                    pattern = re.compile(pattern, re.IGNORECASE | re.DOTALL)
                except re.error as e:
                    raise ValueError(f"invalid selector for '{tag_type}': {e}") from e
            if not isinstance(pattern, re.Pattern):
                raise ValueError(f"selector for '{tag_type}' must be a regex string")
            if pattern.groups < 2:
                raise ValueError(
                    f"selector for '{tag_type}' needs capture groups for the tag name and attributes"
                )
            self.selectors[tag_type] = pattern

    def build_combined_url(self, files: List[str]) -> str:
        """Return the encoded URL fetching `files` in one request."""
        if len(files) == 1:
            return self._encode(files[0].split("?", 1)[0])

        fragments: List[str] = []
        for idx, file in enumerate(files):
            if file.startswith("//"):
                file = "http:" + file

            try:
                parts = urllib.parse.urlsplit(file)
                netloc, pathname = parts.netloc, parts.path or ("/" if parts.netloc else "")
            except ValueError:
                # Unparseable (e.g. broken IPv6 host): embed the path unvalidated.
                netloc, pathname = "", file.split("?", 1)[0]

            if idx == 0:
                host = netloc.rpartition("@")[2].lower() or self.host
                fragments.append(f"//{host}{self.base_path}{pathname}")
            else:
                fragments.append(pathname)

        return self._encode(self.separator.join(fragments))

    def build_combined_tag(self, tag_type: str, files: List[str], attributes: AttributeMap) -> str:
        """Render the single tag replacing a whole group."""
        attributes = dict(attributes)
        attributes.pop("src", None)
        attributes.pop("href", None)

        attr_str = " ".join(
            f'{name}="{"true" if value is True else value}"' for name, value in attributes.items()
        )
        html = TEMPLATES[tag_type].format(attributes=attr_str, src=self.build_combined_url(files))
        return html.replace(f"<{tag_type}  ", f"<{tag_type} ", 1)

    @staticmethod
    def _encode(url: str) -> str:
        return urllib.parse.quote(url, safe=URI_SAFE)

    def process_tags(self, markup: str, tag_type: str, result: Optional[ComboResult] = None) -> str:
        """Combine every group of one tag type."""
        resource_key = RESOURCE_KEYS[tag_type]
        skipped: List[SkippedTag] = []
        tags = find_tags(markup, self.selectors[tag_type])
        groups = group_tags(tags, resource_key, self.combine_attribute, skipped)

        edits: List[Tuple[int, int, str]] = []
        for combine_name, members in groups.items():
            files: List[str] = []
            attributes: AttributeMap = {}
            for tag in members:
                files.append(tag.attributes[resource_key])
                attributes.update(tag.attributes)
                edits.append((tag.start, tag.end, ""))

            html = self.build_combined_tag(tag_type, files, attributes)
            last = members[-1]
            edits[-1] = (last.start, last.end, html)

            if result is not None:
                result.combined.append(CombinedGroup(tag_type, combine_name, files, html))

        if result is not None:
            result.skipped.extend(skipped)

        return _apply_edits(markup, edits)

    def process_with_report(self, content: str) -> ComboResult:
        """Rewrite scripts, then links, collecting diagnostics."""
        result = ComboResult(output=content)
        output = self.process_tags(content, "script", result)
        output = self.process_tags(output, "link", result)
        result.output = output
        return result

    def process(self, content: str) -> str:
        return self.process_with_report(content).output
