"""Prompt templates for postmortem generation and the writing assistant."""

import json
from datetime import datetime, timezone

from postmortem_kg.postmortem.models import GenerationStage, IncidentContext

SYSTEM_ROLE = (
    "You are an expert Site Reliability Engineer writing a postmortem for a "
    "production incident using the Swiss cheese model methodology."
)

STAGE_INSTRUCTIONS = {
    GenerationStage.BUSINESS_IMPACT: """Write ONLY the business impact section, starting with the marker line below.

[BUSINESS_IMPACT]
You MUST provide each field on its own line in this exact format:
Application: <name of the affected application or service>
Start Time: {start}
End Time: {end}
Description: <A detailed multi-line description of which specific functionalities were not available for end customers/consumers. Explain what users could not do, which features were broken, and the scope of the impact.>
Affected Countries: ["US", "UK", "DE"]
Regulatory Reporting: false
Regulatory Entity: N/A

IMPORTANT:
- Application field is REQUIRED - use the service name from affected services or derive from incident title
- Description MUST be detailed and can span multiple lines
- Use actual ISO timestamps for Start Time and End Time
- Affected Countries should be a valid JSON array""",
    GenerationStage.MITIGATION: """Write ONLY the mitigation section, starting with the marker line below.

[MITIGATION]
Describe all actions, resilience patterns, or decisions that were taken to mitigate the incident. Be specific about what was done and why. This should be a detailed narrative explaining:
- What immediate actions were taken
- What resilience patterns were applied
- What decisions were made and their rationale
- How the incident was brought under control""",
    GenerationStage.CAUSAL_ANALYSIS: """Write ONLY the causal analysis section, starting with the marker line below.

[CAUSAL_ANALYSIS]
Provide a systemic causal analysis using the Swiss cheese model. You MUST generate at least 2-4 causal analysis items.

Format as a valid JSON array with this EXACT structure:
[
  {{
    "interceptionLayer": "operate",
    "cause": "Alerting gaps",
    "subCause": "Missing alerts for key metrics",
    "description": "Brief explanation of this specific failure",
    "actionItems": [
      {{
        "description": "Specific action to address this cause",
        "priority": "high"
      }}
    ]
  }}
]

Valid interceptionLayer values: define, design, build, test, release, deploy, operate, response
Valid priority values: high, medium, low

IMPORTANT:
- Generate at least 2-4 distinct causal analysis items
- Each item MUST have at least 1-3 action items
- Action items should be specific and actionable
- The JSON must be valid and parseable""",
}


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value else ""


def format_duration(start: datetime | None, end: datetime | None) -> str:
    """Human readable duration ("2h 5m"); open incidents run until now."""
    if start is None:
        return "Unknown"
    end = end or datetime.now(timezone.utc)
    minutes = max(int((end - start).total_seconds() // 60), 0)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m" if hours else f"{minutes}m"


def build_incident_context_block(incident: IncidentContext) -> str:
    """Render the full incident context shared by every stage prompt."""
    services = "\n".join(
        f"- {s.service_name} (Team: {s.team_name or 'Unknown'})" for s in incident.services
    ) or "None specified"
    timeline = "\n".join(
        f"- {e.created_at}: [{e.type}] {e.description} (by {e.user_name or 'Unknown'})"
        for e in incident.timeline
    ) or "No timeline events recorded"

    return f"""**Incident Details:**
- Incident Number: {incident.incident_number}
- Title: {incident.title}
- Description: {incident.description or 'N/A'}
- Severity: {incident.severity}
- Status: {incident.status}
- Incident Lead: {incident.lead_name or 'Unknown'}
- Reporter: {incident.reporter_name or 'Unknown'}
- Started: {_iso(incident.detected_at) or 'Unknown'}
- Resolved: {_iso(incident.resolved_at) or 'Not yet resolved'}
- Duration: {format_duration(incident.detected_at, incident.resolved_at)}

**Affected Services:**
{services}

**Timeline of Events:**
{timeline}

**Additional Context:**
- Problem Statement: {incident.problem_statement or 'Not documented'}
- Impact: {incident.impact or 'Unknown'}
- Causes: {incident.causes or 'Under investigation'}
- Steps to Resolve: {incident.steps_to_resolve or 'Not documented'}"""


def build_stage_prompt(stage: GenerationStage, incident: IncidentContext) -> str:
    """Build the prompt for one generation stage.

    Every stage embeds the full incident context so the separate completions
    stay consistent with each other.
    """
    start = _iso(incident.detected_at)
    end = _iso(incident.resolved_at) or start
    instructions = STAGE_INSTRUCTIONS[stage].format(start=start, end=end)

    return f"""{SYSTEM_ROLE} Generate the requested section based on the following incident data:

{build_incident_context_block(incident)}

{instructions}

Be professional, factual, and constructive. Focus on learning and improvement rather than blame."""


def _postmortem_summary(postmortem: dict) -> str:
    causal = postmortem.get("causalAnalysis") or []
    duration = postmortem.get("businessImpactDuration")
    return f"""**Business Impact:**
- Application: {postmortem.get('businessImpactApplication') or '(Empty)'}
- Start Time: {postmortem.get('businessImpactStart') or '(Empty)'}
- End Time: {postmortem.get('businessImpactEnd') or '(Empty)'}
- Duration: {f'{duration} minutes' if duration is not None else '(Empty)'}
- Description: {postmortem.get('businessImpactDescription') or '(Empty)'}
- Affected Countries: {json.dumps(postmortem.get('businessImpactAffectedCountries') or [])}
- Regulatory Reporting: {'Yes' if postmortem.get('businessImpactRegulatoryReporting') else 'No'}
- Regulatory Entity: {postmortem.get('businessImpactRegulatoryEntity') or 'N/A'}

**Mitigation:**
{postmortem.get('mitigationDescription') or '(Empty)'}

**Causal Analysis (Swiss Cheese Model):**
{json.dumps(causal, indent=2) if causal else '(Empty)'}"""


def build_quality_check_prompt(postmortem: dict) -> str:
    """Prompt for a structured quality review of a postmortem."""
    return f"""You are an expert SRE reviewing a postmortem document based on the Swiss cheese model methodology. Analyze the following postmortem for completeness, clarity, and quality. Provide specific, actionable feedback.

**Postmortem Content:**

{_postmortem_summary(postmortem)}

---

Please provide a structured quality assessment with the following format:

**Overall Quality Score:** [Rate 1-10]

**Strengths:**
- [List what's done well]

**Issues Found:**
- [List specific problems with severity: Good, Needs Improvement, Critical Issue]

**Specific Recommendations:**
- [Provide actionable suggestions for improvement]

Focus on:
1. Completeness (are all sections filled with sufficient detail?)
2. Clarity (is the writing clear and understandable?)
3. Business impact clarity (is it clear what users/customers experienced?)
4. Mitigation detail (are the actions taken well documented?)
5. Systemic analysis (does the causal analysis identify multiple layers of failure?)
6. Actionability (are action items specific, measurable, and assigned to appropriate layers?)
7. Learning value (does it provide insights for future prevention?)

Be constructive and specific. Flag sections with only 1-2 sentences as insufficient. Evaluate whether the Swiss cheese model is properly applied with multiple interception layers identified."""


def build_coaching_prompt(question: str, postmortem: dict) -> str:
    """Prompt answering a methodology question in the context of a postmortem."""
    causal = postmortem.get("causalAnalysis") or []
    total_action_items = sum(len(item.get("actionItems") or []) for item in causal)

    return f"""You are an expert SRE coach helping someone write a better postmortem using the Swiss cheese model methodology. Answer their question with practical, actionable guidance.

**User's Question:**
{question}

**Current Postmortem Context:**
This postmortem follows the Swiss cheese model approach with systemic causal analysis:
- Business Impact: {'Written' if postmortem.get('businessImpactDescription') else 'Empty'}
- Mitigation: {'Written' if postmortem.get('mitigationDescription') else 'Empty'}
- Causal Analysis: {len(causal)} interception layers identified
- Action Items: {total_action_items} items across all layers

**Postmortem Structure:**
The postmortem uses three main sections:
1. **Business Impact** - Documents what happened from users' or business perspective (service downtime, degraded performance, affected customers, revenue impact, etc.)
2. **Mitigation** - Describes actions, resilience patterns, or decisions taken to mitigate the incident
3. **Causal Analysis** - Uses Swiss cheese model to identify systemic failures across multiple interception layers (define, design, build, test, release, deploy, operate, response)

Provide a helpful, concise answer (2-4 paragraphs) that:
1. Directly addresses their question
2. Provides practical examples if relevant
3. References the Swiss cheese model and systemic thinking
4. Suggests how to apply this to their current postmortem
5. Emphasizes identifying multiple layers of failure rather than a single root cause

Be encouraging and educational. Help them understand that effective postmortems identify systemic issues across the software development lifecycle, not just immediate technical causes."""


EXPANDABLE_SECTIONS = {
    "businessImpactDescription": (
        "Business Impact Description",
        """Focus on:
- Which specific functionalities were unavailable for end customers/consumers
- What users could not do and which features were broken
- The scope and scale of the impact (number of users, geographic regions, business functions)
- Any revenue, compliance, or reputational impact""",
    ),
    "mitigationDescription": (
        "Mitigation Description",
        """Focus on:
- Immediate actions taken to contain or resolve the incident
- Resilience patterns applied (circuit breakers, fallbacks, rate limiting, etc.)
- Key decisions made and their rationale
- How the incident was brought under control
- Timeline of mitigation steps""",
    ),
}


def build_expansion_prompt(section: str, current_content: str | None, postmortem: dict) -> str:
    """Prompt expanding one free-text section of a postmortem."""
    title, guidance = EXPANDABLE_SECTIONS[section]
    duration = postmortem.get("businessImpactDuration")

    return f"""You are an expert SRE helping expand a postmortem section using the Swiss cheese model methodology. The user wants to expand the "{title}" section.

**Current Content:**
{current_content or '(Empty)'}

**Full Postmortem Context:**
- Incident: {postmortem.get('incidentNumber') or postmortem.get('incidentId') or 'Unknown'}
- Application: {postmortem.get('businessImpactApplication') or 'Unknown'}
- Duration: {f'{duration} minutes' if duration is not None else 'Unknown'}

**Section Guidance:**
{guidance}

Please expand this section with:
1. More technical detail and specificity
2. Relevant metrics or data points (if applicable)
3. Clear, professional language
4. 2-3 paragraphs of comprehensive content
5. Focus on systemic understanding rather than blame

Maintain the same tone and style as the original. Add substance without being verbose. Focus on providing value to future readers who want to learn from this incident and prevent similar issues.

Return only the expanded content, without any preamble or explanation."""
