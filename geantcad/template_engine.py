# geantcad/template_engine.py
"""
`{{name}}` substitution for the generated project files, plus preservation
of hand-written code between user-code markers:

    // ==== USER CODE BEGIN <TAG>
    ...kept across regenerations...
    // ==== USER CODE END <TAG>

Markers must sit alone on their line (leading/trailing whitespace allowed).
"""
import logging
import re

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")
MARKER_PATTERN = re.compile(r"^[ \t]*// ==== USER CODE (BEGIN|END) ([A-Za-z0-9_]+)[ \t]*$", re.MULTILINE)


def _body_start(text, marker_end):
    """Index just past the newline that ends a BEGIN marker line."""
    newline = text.find("\n", marker_end)
    return len(text) if newline == -1 else newline + 1


def find_user_regions(text):
    """
    Returns [(tag, body_start, body_end)] in source order. A BEGIN inside an
    open region restarts it, an unmatched END is ignored, and a region still
    open at the end of the text is dropped; each case is logged.
    """
    regions = []
    open_tag = None
    open_start = None
    for match in MARKER_PATTERN.finditer(text):
        kind, tag = match.group(1), match.group(2)
        if kind == "BEGIN":
            if open_tag is not None:
                logger.warning("User code region '%s' opened before '%s' was closed; restarting.", tag, open_tag)
            open_tag = tag
            open_start = _body_start(text, match.end())
        elif open_tag == tag:
            regions.append((tag, open_start, match.start()))
            open_tag = None
        else:
            logger.warning("Ignoring END marker for user code region '%s' (open region: %s).", tag, open_tag)
    if open_tag is not None:
        logger.warning("User code region '%s' is never closed.", open_tag)
    return regions


def extract_user_code(content, tag):
    """Body of the first region named `tag`, or None."""
    for region_tag, start, end in find_user_regions(content):
        if region_tag == tag:
            return content[start:end]
    return None


class TemplateEngine:

    def render(self, template, variables):
        """Replaces each `{{name}}` once; unknown names become the empty string."""
        def substitute(match):
            value = variables.get(match.group(1))
            return "" if value is None else str(value)
        return PLACEHOLDER_PATTERN.sub(substitute, template)

    def render_with_preservation(self, template, variables, existing=None):
        """
        Renders `template`, then carries each user region body over from
        `existing`. The k-th region with a given tag takes the body of the
        k-th region with that tag in `existing`.
        """
        rendered = self.render(template, variables)
        if not existing:
            return rendered

        saved = {}
        for tag, start, end in find_user_regions(existing):
            saved.setdefault(tag, []).append(existing[start:end])

        seen = {}
        replacements = []
        for tag, start, end in find_user_regions(rendered):
            k = seen.get(tag, 0)
            seen[tag] = k + 1
            bodies = saved.get(tag, [])
            if k < len(bodies):
                replacements.append((start, end, bodies[k]))

        # Back to front so earlier offsets stay valid
        for start, end, body in reversed(replacements):
            rendered = rendered[:start] + body + rendered[end:]
        return rendered
