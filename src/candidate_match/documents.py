"""Render CVs and project requests as Markdown for the ranking model."""

from __future__ import annotations

from candidate_match.schemas import CandidateSnapshot, ProjectRequest, RequirementPriority


def _period(start: str, end: str) -> str:
    if not start and not end:
        return "Period unknown"
    return f"{start or '?'} - {end or 'present'}"


def render_cv_markdown(snapshot: CandidateSnapshot) -> str:
    lines = [f"# {snapshot.name or 'Unnamed consultant'}", ""]
    lines += ["## Information", f"- **Consultant ID**: {snapshot.consultant_id}"]
    if snapshot.user_id:
        lines.append(f"- **User ID**: {snapshot.user_id}")
    lines.append("")

    lines.append("## Skills")
    if snapshot.skills:
        lines += [f"- **{skill}**" for skill in snapshot.skills]
    else:
        lines.append("No skills registered.")
    lines.append("")

    if snapshot.cv_quality is not None:
        lines += ["## CV Quality", f"- **Score**: {snapshot.cv_quality}/100", ""]

    cv = snapshot.cv
    if cv is None:
        lines.append("No CV registered.")
        return "\n".join(lines).rstrip() + "\n"

    if cv.key_qualifications:
        lines.append("## Key Qualifications")
        for q in cv.key_qualifications:
            if q.label:
                lines.append(f"### {q.label}")
            lines += [q.description, ""]

    lines.append("## Work Experience")
    if cv.work_experience:
        for w in cv.work_experience:
            lines += [f"### {w.employer}", f"*{_period(w.from_year_month, w.to_year_month)}*", ""]
    else:
        lines += ["No work experience registered.", ""]

    if cv.project_experience:
        lines.append("## Project Experience")
        for p in cv.project_experience:
            lines += [f"### {p.customer}", f"*{_period(p.from_year_month, p.to_year_month)}*", ""]
            lines.append(f"**Description**: {p.description}")
            if p.long_description.strip():
                lines += ["", p.long_description]
            if p.roles:
                lines += ["", "**Roles**:"] + [f"- {r}" for r in p.roles]
            if p.skills:
                lines += ["", f"**Technologies**: {', '.join(p.skills)}"]
            lines.append("")

    lines.append("## Education")
    if cv.education:
        for e in cv.education:
            lines += [f"### {e.degree} - {e.school}", ""]
    else:
        lines += ["No education registered.", ""]

    return "\n".join(lines).rstrip() + "\n"


def describe_project_request(request: ProjectRequest) -> str:
    """Plain-text description of a project request used in the ranking prompt."""
    lines = [f"Customer: {request.customer_name or 'Unknown'}", f"Title: {request.display_title}"]
    if request.summary:
        lines.append(f"Summary: {request.summary}")
    if request.description and request.description != request.title:
        lines += ["", "Description:", request.description]
    if request.required_skills:
        lines += ["", f"Required skills: {', '.join(request.required_skills)}"]

    for priority, heading in ((RequirementPriority.MUST, "MUST requirements"),
                              (RequirementPriority.SHOULD, "SHOULD requirements")):
        reqs = [r for r in request.requirements if r.priority == priority]
        if reqs:
            lines += ["", f"{heading}:"]
            for r in reqs:
                lines.append(f"- {r.name}: {r.details}" if r.details else f"- {r.name}")

    timeline = []
    if request.start_date:
        timeline.append(f"start {request.start_date.isoformat()}")
    if request.end_date:
        timeline.append(f"end {request.end_date.isoformat()}")
    if request.response_deadline:
        timeline.append(f"response deadline {request.response_deadline.isoformat()}")
    if timeline:
        lines += ["", f"Timeline: {', '.join(timeline)}"]
    return "\n".join(lines)
