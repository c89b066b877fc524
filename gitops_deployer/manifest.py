"""
GitOps manifest mutation.

The manifest is patched as text, one line at a time, so comments and
formatting survive the commit untouched. A bare ``key:`` line at any
indentation opens a block, which ends at the next line indented at or above
the key. Inside the target service's block the first ``image:`` line has the
text after its last ``:`` replaced with the new tag.

Note that a nested map does not end the service block. A scanner that
stops at any bare ``key:`` line would give up at ``deploy:`` in::

    api:
      deploy:
        replicas: 2
      image: shop/api:v1

and never see the ``image:`` line below it; here the block runs until
``api:``'s own indentation level comes back, so that line is patched.

If the service key appears more than once, the first block wins.
"""

import logging
import re
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from gitops_deployer.exceptions import ManifestValidationError

logger = logging.getLogger(__name__)

_BLOCK_KEY = re.compile(r"^\s*([A-Za-z0-9_.-]+):\s*$")
_IMAGE_LINE = re.compile(r"""^(\s*)(image:\s*)(["']?)(.+?):([^\s:/"']+)(["']?)(\s*(?:#.*)?)$""")
_IMAGE_KEY = re.compile(r"^\s*image:\s*\S")
_BLANK_RUN = re.compile(r"\n{3,}")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def _split_lines(content: str) -> List[str]:
    # keepends so CRLF and a missing final newline survive a patch
    return content.splitlines(keepends=True)


def _line_body(line: str) -> Tuple[str, str]:
    body = line.rstrip("\r\n")
    return body, line[len(body):]


def _indent(body: str) -> int:
    return len(body) - len(body.lstrip(" \t"))


def _find_image_line(lines: Sequence[str], service_name: str) -> Optional[int]:
    in_target_block = False
    target_indent = -1
    for index, line in enumerate(lines):
        body, _ = _line_body(line)
        stripped = body.strip()
        if not stripped or stripped.startswith("#"):
            continue

        if in_target_block:
            if _indent(body) <= target_indent:
                # Left the first target block without an image line
                return None
            if _IMAGE_KEY.match(body):
                return index
            continue

        block = _BLOCK_KEY.match(body)
        if block and block.group(1) == service_name:
            in_target_block = True
            target_indent = _indent(body)
    return None


def extract_tag(content: str, service_name: str) -> Optional[str]:
    """
    Return the image tag of ``service_name``, or None if there is none.
    """
    lines = _split_lines(content)
    index = _find_image_line(lines, service_name)
    if index is None:
        return None
    body, _ = _line_body(lines[index])
    match = _IMAGE_LINE.match(body)
    return match.group(5) if match else None


def patch_tag(content: str, service_name: str, new_tag: str) -> str:
    """
    Return ``content`` with the image tag of ``service_name`` set to ``new_tag``.

    Only the tag text changes; indentation, spacing and trailing whitespace of
    the image line and every other line are kept as they were. Content without
    a matching image line is returned unchanged.
    """
    if not new_tag or any(c.isspace() for c in new_tag) or ":" in new_tag:
        raise ManifestValidationError(f"Invalid image tag: {new_tag!r}")

    lines = _split_lines(content)
    index = _find_image_line(lines, service_name)
    if index is None:
        logger.warning(f"No image line found for {service_name}, manifest unchanged")
        return content

    body, ending = _line_body(lines[index])
    match = _IMAGE_LINE.match(body)
    if not match:
        logger.warning(f"Image line for {service_name} has no tag, manifest unchanged")
        return content

    leading, prefix, quote, repository, old_tag, close_quote, trailing = match.groups()
    lines[index] = (
        f"{leading}{prefix}{quote}{repository}:{new_tag}{close_quote}{trailing}{ending}"
    )
    logger.info(f"Updated {service_name} image tag from {old_tag} to {new_tag}")
    return "".join(lines)


def validate_service_exists(content: str, service_name: str) -> bool:
    """Check that ``service_name`` appears as a block key in the manifest."""
    pattern = re.compile(rf"^\s*{re.escape(service_name)}:\s*$", re.MULTILINE)
    return pattern.search(content) is not None


def clean(content: str) -> str:
    """
    Normalize manifest text before committing it.

    Tabs become two spaces, trailing whitespace is stripped, runs of blank
    lines collapse to one and the text ends with exactly one newline.

    Raises:
        ManifestValidationError: If the content is empty or holds control characters
    """
    if not content or not content.strip():
        raise ManifestValidationError("Manifest content cannot be empty")
    if _CONTROL_CHARS.search(content):
        raise ManifestValidationError("Manifest content contains control characters")

    cleaned = content.replace("\r\n", "\n").replace("\t", "  ")
    cleaned = "\n".join(line.rstrip() for line in cleaned.split("\n"))
    cleaned = _BLANK_RUN.sub("\n\n", cleaned)
    cleaned = cleaned.rstrip("\n") + "\n"
    return cleaned


def commit_message(updates: Mapping[str, str], previous: Optional[Mapping[str, Optional[str]]] = None) -> str:
    """
    Build the commit message for a set of tag updates.

    Args:
        updates: Service name -> new tag
        previous: Service name -> tag before the update, when known
    """
    previous = previous or {}

    def describe(service: str, tag: str) -> str:
        old = previous.get(service)
        if old and old != tag:
            return f"{service} image tag from {old} to {tag}"
        return f"{service} image tag to {tag}"

    if len(updates) == 1:
        service, tag = next(iter(updates.items()))
        return f"Update {describe(service, tag)}"

    names = ", ".join(updates)
    lines = [f"Update image tags for {names}", ""]
    lines.extend(f"- {describe(service, tag)}" for service, tag in updates.items())
    return "\n".join(lines)


def apply_updates(content: str, updates: Mapping[str, str]) -> Tuple[str, Dict[str, Optional[str]]]:
    """
    Patch several services in one manifest.

    All services are validated before anything is patched, so a missing
    service fails the whole set.

    Returns:
        Tuple of (patched content, previous tag per service)

    Raises:
        ManifestValidationError: If a service is missing from the manifest
    """
    missing = [name for name in updates if not validate_service_exists(content, name)]
    if missing:
        raise ManifestValidationError(
            f"Service(s) not found in manifest: {', '.join(missing)}"
        )

    previous: Dict[str, Optional[str]] = {}
    for service_name, tag in updates.items():
        previous[service_name] = extract_tag(content, service_name)
        content = patch_tag(content, service_name, tag)
    return content, previous
