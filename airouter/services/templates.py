"""Starter templates for memory documents, one per hierarchy level"""

import re
from datetime import datetime

from pydantic import BaseModel, Field

from airouter.core.models.memory import MemoryLevel

PLACEHOLDER_PATTERN = re.compile(r"\{\{([A-Z0-9_]+)\}\}")
UNFILLED_PLACEHOLDER = "*Not specified*"


class MemoryTemplate(BaseModel):
    """Markdown skeleton for a new memory document"""

    name: str
    level: MemoryLevel
    template_type: str = "default"
    title: str = Field(..., description="Title with placeholders")
    content: str = Field(..., description="Markdown body with {{PLACEHOLDER}} markers")

    @property
    def placeholders(self) -> list[str]:
        return sorted(set(PLACEHOLDER_PATTERN.findall(self.content + self.title)))


def render_placeholders(text: str, values: dict[str, str]) -> str:
    """Substitute {{KEY}} markers; keys are matched case-insensitively, unknown keys are marked unfilled"""
    normalized = {key.upper(): value for key, value in values.items()}
    return PLACEHOLDER_PATTERN.sub(
        lambda match: normalized.get(match.group(1), UNFILLED_PLACEHOLDER), text
    )


_ORG_DEFAULT = MemoryTemplate(
    name="Standard Organization Memory",
    level=MemoryLevel.ORG,
    title="{{ORG_NAME}} Organization Memory",
    content="""# {{ORG_NAME}} Organization Memory

## Overview
- **Organization**: {{ORG_NAME}}
- **Industry**: {{INDUSTRY}}
- **Team Size**: {{TEAM_SIZE}}

Organization-wide context shared by every AI interaction.

## Tech Stack

### Frontend
- {{FRONTEND_STACK}}

### Backend
- {{BACKEND_STACK}}

### Database
- {{DATABASE_STACK}}

### Infrastructure
- {{INFRA_STACK}}

## Coding Standards
- *Add coding standards here*

### Code Review Checklist
- [ ] Type safety
- [ ] Error handling
- [ ] Tests included

## Architecture Patterns
- *Add preferred patterns and anti-patterns here*

## External Integrations
- *List external services here*

---
*Last updated: {{UPDATED_AT}}*
""",
)

_ORG_SAAS = MemoryTemplate(
    name="SaaS Product Memory",
    level=MemoryLevel.ORG,
    template_type="saas",
    title="{{ORG_NAME}} SaaS Organization Memory",
    content="""# {{ORG_NAME}} SaaS Organization Memory

## Product Overview
- **Product**: {{PRODUCT_NAME}}
- **Primary Users**: {{PRIMARY_USERS}}

## Tech Stack

### Frontend
- {{FRONTEND_STACK}}

### Backend
- {{BACKEND_STACK}}

### Database
- {{DATABASE_STACK}}

## Multi-Tenancy
- **Isolation Strategy**: {{TENANT_STRATEGY}}

## Billing
- **Payment Provider**: {{PAYMENT_PROVIDER}}

## Authentication
- **Method**: {{AUTH_METHOD}}
- *Describe roles and permissions here*

---
*Last updated: {{UPDATED_AT}}*
""",
)

_DOMAIN_DEFAULT = MemoryTemplate(
    name="Standard Domain Memory",
    level=MemoryLevel.DOMAIN,
    title="{{DOMAIN_NAME}} Domain Memory",
    content="""# {{DOMAIN_NAME}} Domain Memory

## Domain Overview
- **Domain**: {{DOMAIN_NAME}}
- **Purpose**: {{DOMAIN_PURPOSE}}
- **Stakeholders**: {{STAKEHOLDERS}}

## Business Logic
- *Add business rules and workflows here*

## Data Model
- *List key entities and their relationships*

## API Endpoints
| Endpoint | Method | Purpose |
|----------|--------|---------|

---
*Last updated: {{UPDATED_AT}}*
""",
)

_PROJECT_DEFAULT = MemoryTemplate(
    name="Standard Project Memory",
    level=MemoryLevel.PROJECT,
    title="{{PROJECT_NAME}} Project Memory",
    content="""# {{PROJECT_NAME}} Project Memory

## Project Overview
- **Project**: {{PROJECT_NAME}}
- **Repository**: {{REPO_URL}}
- **Status**: {{STATUS}}

## Project Structure
{{PROJECT_STRUCTURE}}

## Key Files
- *List entry points, configuration and core source files*

## Recent Decisions
| Date | Decision | Rationale |
|------|----------|-----------|

---
*Last updated: {{UPDATED_AT}}*
""",
)

_CIRCLE_DEFAULT = MemoryTemplate(
    name="Standard Circle Memory",
    level=MemoryLevel.CIRCLE,
    title="{{CIRCLE_NAME}} Circle Memory",
    content="""# {{CIRCLE_NAME}} Circle Memory

## Circle Overview
- **Circle**: {{CIRCLE_NAME}}
- **Focus**: {{CIRCLE_FOCUS}}
- **Members**: {{MEMBERS}}

## Working Agreements
- *Add team conventions here*

## Ownership
- *List services and components this circle owns*

---
*Last updated: {{UPDATED_AT}}*
""",
)

_USER_DEFAULT = MemoryTemplate(
    name="User Preferences",
    level=MemoryLevel.USER,
    title="{{USER_NAME}} User Preferences",
    content="""# {{USER_NAME}} User Preferences

## Preferences
- **Verbosity**: {{VERBOSITY}}
- **Preferred Language**: {{PREFERRED_LANG}}
- **Code Comment Style**: {{COMMENT_STYLE}}

## Areas of Expertise
- {{EXPERTISE_AREAS}}

## Working Style
- {{WORKING_STYLE}}

---
*Last updated: {{UPDATED_AT}}*
""",
)

TEMPLATES: dict[tuple[MemoryLevel, str], MemoryTemplate] = {
    (template.level, template.template_type): template
    for template in (
        _ORG_DEFAULT,
        _ORG_SAAS,
        _DOMAIN_DEFAULT,
        _PROJECT_DEFAULT,
        _CIRCLE_DEFAULT,
        _USER_DEFAULT,
    )
}


def get_template(level: MemoryLevel, template_type: str = "default") -> MemoryTemplate:
    """Template for a level, falling back to the level's default template"""
    return TEMPLATES.get((level, template_type)) or TEMPLATES[(level, "default")]


def render_template(
    template: MemoryTemplate,
    placeholders: dict[str, str],
    now: datetime | None = None,
) -> tuple[str, str]:
    """Render a template

    Args:
        template: Template to render
        placeholders: Values keyed by placeholder name (e.g. ORG_NAME)
        now: Timestamp for {{UPDATED_AT}} (defaults to utcnow)

    Returns:
        (title, content)
    """
    values = {"UPDATED_AT": (now or datetime.utcnow()).strftime("%Y-%m-%d %H:%M UTC")}
    values.update({key.upper(): value for key, value in placeholders.items()})
    return render_placeholders(template.title, values), render_placeholders(template.content, values)
