"""Blue/Green Deployment Orchestration — Descriptor Rendering.

Templates mark substitution points as ``__NAME__`` where NAME is made of
upper-case letters and digits joined by single underscores, e.g.
``__BACKEND_IMAGE__``. Rendering is one pass over the template: inserted
values are never scanned again, and any placeholder without a value fails
the whole render.
"""

import hashlib
import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from .exceptions import RenderError
from .models import RenderedDescriptor

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"__([A-Z0-9]+(?:_[A-Z0-9]+)*)__")


def find_placeholders(template: str) -> List[str]:
    """Placeholder names in order of first appearance."""
    seen: Dict[str, None] = {}
    for match in PLACEHOLDER_RE.finditer(template):
        seen.setdefault(match.group(1), None)
    return list(seen)


def extract_artifacts(content: str) -> Dict[str, str]:
    """Map container name to image for a JSON task definition.

    Anything that is not a task definition yields an empty mapping.
    """
    try:
        document = json.loads(content)
    except ValueError:
        return {}
    if not isinstance(document, dict):
        return {}
    artifacts = {}
    for container in document.get("containerDefinitions") or []:
        if isinstance(container, dict) and container.get("name") and container.get("image"):
            artifacts[str(container["name"])] = str(container["image"])
    return artifacts


def render(template: str, values: Mapping[str, str]) -> RenderedDescriptor:
    """Substitute every placeholder in ``template``.

    Raises:
        RenderError: One or more placeholders have no value. All missing
            names are reported and nothing is produced.
    """
    missing = [name for name in find_placeholders(template) if name not in values]
    if missing:
        raise RenderError(
            f"Unresolved placeholders: {', '.join(missing)}",
            missing=missing,
        )

    content = PLACEHOLDER_RE.sub(lambda m: str(values[m.group(1)]), template)
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
    descriptor = RenderedDescriptor(
        content=content,
        digest=digest,
        artifacts=extract_artifacts(content),
    )
    logger.debug(
        "Rendered descriptor %s (%d artifacts)",
        digest[:12],
        len(descriptor.artifacts),
    )
    return descriptor


def default_output_path(template_path: Path) -> Path:
    """``task-definition-template.json`` -> ``task-definition-rendered.json``."""
    stem = template_path.stem
    if "template" in stem:
        stem = stem.replace("template", "rendered")
    else:
        stem = f"{stem}.rendered"
    return template_path.with_name(stem + template_path.suffix)


def render_file(
    template_path: Union[str, Path],
    values: Mapping[str, str],
    output_path: Optional[Union[str, Path]] = None,
) -> RenderedDescriptor:
    """Render a template file; the output file is written only on success."""
    template_path = Path(template_path)
    try:
        template = template_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise RenderError(f"Cannot read template {template_path}: {exc}") from exc

    descriptor = render(template, values)
    target = Path(output_path) if output_path else default_output_path(template_path)
    target.write_text(descriptor.content, encoding="utf-8")
    logger.info("Rendered %s written to %s", template_path.name, target)
    return descriptor


def task_definition_values(
    region: str,
    ecr_registry: str,
    image_tag: str,
    execution_role_arn: str,
    task_role_arn: str,
    db_username: str = "",
    db_password: str = "",
    db_name: str = "",
    alb_dns_name: str = "",
) -> Dict[str, str]:
    """Substitution map for the notes stack ECS task definition."""
    required = {
        "region": region,
        "ecr_registry": ecr_registry,
        "image_tag": image_tag,
        "execution_role_arn": execution_role_arn,
        "task_role_arn": task_role_arn,
    }
    missing = [name for name, value in required.items() if not value]
    if missing:
        raise RenderError(
            f"Missing required arguments: {', '.join(missing)}",
            missing=missing,
        )

    registry = ecr_registry.rstrip("/")
    return {
        "EXECUTION_ROLE_ARN": execution_role_arn,
        "TASK_ROLE_ARN": task_role_arn,
        "BACKEND_IMAGE": f"{registry}/notes-backend:{image_tag}",
        "FRONTEND_IMAGE": f"{registry}/notes-frontend:{image_tag}",
        "PROXY_IMAGE": f"{registry}/notes-proxy:{image_tag}",
        "AWS_REGION": region,
        "DB_USERNAME": db_username,
        "DB_PASSWORD": db_password,
        "DB_NAME": db_name,
        "NEXT_PUBLIC_API_URL": f"http://{alb_dns_name}/api",
    }
