from __future__ import annotations

import json
import logging
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.orm import Session, selectinload

from app import audit
from app.crm.models import (
    CRMAutomationRule,
    CRMDeal,
    CRMDealStageHistory,
    CRMOrganization,
    CRMPipeline,
    CRMPipelineStage,
    CRMPipelineStageAutomation,
    utcnow,
)
from app.crm.schemas import IndustryApplyResponse, IndustryTemplateSummary, normalize_actions
from app.crm.service import ActorUser, _require_organization


logger = logging.getLogger("app.crm.templates")

TEMPLATE_VERSION = "1.0"


@dataclass
class StageAutomationTemplate:
    trigger: str
    actions: list[dict[str, Any]]
    duration: int | None = None


@dataclass
class StageTemplate:
    name: str
    order: int
    color: str
    probability: int
    description: str
    intent: str
    required_fields: list[str] = field(default_factory=list)
    sub_statuses: list[str] = field(default_factory=list)
    failure_signals: list[str] = field(default_factory=list)
    automations: list[StageAutomationTemplate] = field(default_factory=list)


@dataclass
class AutomationRuleTemplate:
    name: str
    description: str
    trigger: str
    actions: list[dict[str, Any]]


@dataclass
class CustomFieldTemplate:
    name: str
    label: str
    type: str
    required: bool
    options: list[str] | None = None


@dataclass
class IndustryTemplate:
    id: str
    name: str
    description: str
    stages: list[StageTemplate]
    automation_rules: list[AutomationRuleTemplate] = field(default_factory=list)
    custom_fields: list[CustomFieldTemplate] = field(default_factory=list)


def _task(title: str, *, due_in_hours: int | None = None, priority: str | None = None) -> dict[str, Any]:
    config: dict[str, Any] = {"title": title, "assignToOwner": True}
    if due_in_hours is not None:
        config["dueInHours"] = due_in_hours
    if priority is not None:
        config["priority"] = priority
    return {"type": "create_task", "config": config}


def _notify(message: str) -> dict[str, Any]:
    return {"type": "send_notification", "config": {"message": message}}


def _on_enter(*actions: dict[str, Any]) -> StageAutomationTemplate:
    return StageAutomationTemplate(trigger="on_enter", actions=list(actions))


def _after(minutes: int, *actions: dict[str, Any]) -> StageAutomationTemplate:
    return StageAutomationTemplate(trigger="on_duration", duration=minutes, actions=list(actions))


EDUCATION = IndustryTemplate(
    id="education",
    name="Education & Study Abroad",
    description="High-touch, long-cycle student counseling and admissions",
    stages=[
        StageTemplate(
            name="Inquiry Received",
            order=1,
            color="#94a3b8",
            probability=5,
            description="Student has shown initial interest",
            intent="Capture basic contact and interest information",
            required_fields=["name", "contact", "desiredCountry", "educationLevel"],
            sub_statuses=["WhatsApp", "Call", "Form", "Walk-in"],
            failure_signals=["No contact for 24 hours", "Incomplete information"],
            automations=[
                _on_enter(
                    {"type": "assign_user", "config": {"role": "counselor", "strategy": "round_robin"}},
                    _task("Schedule first counseling call", due_in_hours=24, priority="high"),
                    _notify("New inquiry assigned to you"),
                ),
                _after(1440, _task("URGENT: Follow up on pending inquiry", priority="urgent")),
            ],
        ),
        StageTemplate(
            name="Initial Counseling Completed",
            order=2,
            color="#60a5fa",
            probability=15,
            description="Eligibility and intent discussed with student",
            intent="Understand budget, timeline, and qualification",
            required_fields=["budget", "englishTestStatus", "academicScore", "intakePreference"],
            sub_statuses=["Budget Clear", "Budget Unclear", "Intake Decided", "Intake Flexible"],
            failure_signals=["Budget mismatch", "Unclear timeline", "Low qualification"],
            automations=[
                _on_enter(_task("Generate eligibility report and shortlist", due_in_hours=48)),
                _after(4320, _task("Follow up: Share university options", priority="high")),
            ],
        ),
        StageTemplate(
            name="Eligibility & Shortlisting",
            order=3,
            color="#8b5cf6",
            probability=30,
            description="Universities and programs shortlisted",
            intent="Match student profile with suitable programs",
            required_fields=["shortlistedPrograms", "preferredCountry"],
            sub_statuses=["Eligible", "Borderline", "Need Prep"],
            failure_signals=["Weak profile", "Unrealistic expectations", "Budget issues"],
            automations=[_on_enter(_task("Start document checklist preparation", due_in_hours=24))],
        ),
        StageTemplate(
            name="Document Collection",
            order=4,
            color="#f59e0b",
            probability=45,
            description="Academic and financial documents being collected",
            intent="Gather all required application materials",
            required_fields=["documentChecklist"],
            sub_statuses=["In Progress", "Pending Items", "Complete"],
            failure_signals=["Delay > 3 days", "Missing critical docs", "Document quality issues"],
            automations=[
                _on_enter(_task("Daily reminder: Check document collection status", due_in_hours=24)),
                _after(4320, _task("URGENT: Documents delayed - escalate to manager", priority="urgent")),
            ],
        ),
        StageTemplate(
            name="Application Submitted",
            order=5,
            color="#3b82f6",
            probability=60,
            description="Applications sent to universities",
            intent="Track application submission and fees",
            required_fields=["applicationId", "submissionDate"],
            sub_statuses=["Paid", "Pending Fee", "Fee Waived"],
            failure_signals=["Payment delay", "Application incomplete"],
            automations=[
                _on_enter(
                    _task("Follow up on application status", due_in_hours=336),
                    _notify("Application submitted successfully!"),
                )
            ],
        ),
        StageTemplate(
            name="Offer Received",
            order=6,
            color="#10b981",
            probability=75,
            description="University offer letter received",
            intent="Review and process offer conditions",
            required_fields=["offerType", "offerDeadline"],
            sub_statuses=["Conditional", "Unconditional"],
            failure_signals=["Approaching deadline", "Condition not met"],
            automations=[
                _on_enter(
                    _task("Review offer conditions and acceptance deadline", due_in_hours=48, priority="high"),
                    _notify("Offer received! Review immediately."),
                )
            ],
        ),
        StageTemplate(
            name="Offer Accepted",
            order=7,
            color="#22c55e",
            probability=85,
            description="Student has accepted the offer",
            intent="Begin visa and payment process",
            required_fields=["acceptanceDate", "tuitionDeadline"],
            sub_statuses=["Payment Pending", "Payment Confirmed"],
            failure_signals=["Payment delay", "Visa prep not started"],
            automations=[
                _on_enter(
                    _task("Initiate tuition payment process", due_in_hours=48, priority="high"),
                    _task("Start visa documentation preparation", due_in_hours=72),
                )
            ],
        ),
        StageTemplate(
            name="Visa Filed",
            order=8,
            color="#6366f1",
            probability=90,
            description="Visa application submitted",
            intent="Track visa processing and requirements",
            required_fields=["visaApplicationId", "filingDate"],
            sub_statuses=["Biometrics Pending", "Biometrics Done", "Interview Scheduled"],
            failure_signals=["Biometrics delay", "Missing documents"],
            automations=[_on_enter(_task("Track visa status - check embassy portal", due_in_hours=168))],
        ),
        StageTemplate(
            name="Visa Decision",
            order=9,
            color="#10b981",
            probability=95,
            description="Visa approved or refused",
            intent="Record outcome and next steps",
            required_fields=["visaStatus", "decisionDate"],
            sub_statuses=["Approved", "Refused", "Additional Docs Requested"],
            automations=[_on_enter(_notify("Visa decision received - check immediately!"))],
        ),
        StageTemplate(
            name="Enrollment Completed",
            order=10,
            color="#059669",
            probability=100,
            description="Student successfully enrolled",
            intent="Case closure and referral generation",
            required_fields=["enrollmentDate", "studentId"],
            sub_statuses=["Enrolled", "Deferred"],
            automations=[
                _on_enter(
                    _task("Request referral and testimonial", due_in_hours=168),
                    {"type": "update_field", "config": {"field": "tags", "value": "alumni"}},
                )
            ],
        ),
    ],
    automation_rules=[
        AutomationRuleTemplate(
            name="Daily Follow-up Reminders",
            description="Create daily tasks for any deal not updated in 24 hours",
            trigger="time_based",
            actions=[
                {
                    "type": "create_task",
                    "config": {"title": "Follow up with student - no activity in 24 hours", "priority": "high"},
                }
            ],
        )
    ],
    custom_fields=[
        CustomFieldTemplate(
            name="desiredCountry",
            label="Desired Country",
            type="select",
            required=True,
            options=["USA", "UK", "Canada", "Australia", "Germany"],
        ),
        CustomFieldTemplate(
            name="educationLevel",
            label="Education Level",
            type="select",
            required=True,
            options=["Undergraduate", "Postgraduate", "PhD"],
        ),
        CustomFieldTemplate(
            name="englishTestStatus",
            label="English Test",
            type="select",
            required=False,
            options=["Not Taken", "Scheduled", "Completed"],
        ),
        CustomFieldTemplate(name="budget", label="Budget (USD)", type="number", required=True),
    ],
)


AGENCY = IndustryTemplate(
    id="agency",
    name="Agencies & Service Businesses",
    description="Project + Retainer based service delivery",
    stages=[
        StageTemplate(
            name="Lead Captured",
            order=1,
            color="#94a3b8",
            probability=10,
            description="Interest shown via any channel",
            intent="Initial contact established",
            required_fields=["name", "contact", "serviceInterest"],
            sub_statuses=["Website Form", "Referral", "Cold Outreach", "Event"],
            failure_signals=["No contact attempted within 4 hours"],
            automations=[
                _on_enter(
                    {"type": "assign_user", "config": {"role": "sales", "strategy": "round_robin"}},
                    _task("Call new lead within 4 hours", due_in_hours=4, priority="high"),
                ),
                _after(240, _task("URGENT: Lead not contacted yet!", priority="urgent")),
            ],
        ),
        StageTemplate(
            name="Discovery Call Done",
            order=2,
            color="#60a5fa",
            probability=25,
            description="Requirements understood",
            intent="Qualify opportunity and understand scope",
            required_fields=["scope", "budgetRange", "decisionMaker", "timeline"],
            sub_statuses=["Qualified", "Needs Nurturing", "Unqualified"],
            failure_signals=["Unclear scope", "Budget too low", "No decision maker access"],
            automations=[
                _on_enter(_task("Prepare and send proposal", due_in_hours=48)),
                _after(2880, _task("Follow up: Proposal status check", priority="high")),
            ],
        ),
        StageTemplate(
            name="Proposal Sent",
            order=3,
            color="#8b5cf6",
            probability=40,
            description="Commercial and scope shared",
            intent="Waiting for client review and decision",
            required_fields=["proposalAmount", "proposalDate"],
            sub_statuses=["Viewed", "Negotiating", "Silent"],
            failure_signals=["No response > 5 days", "Price objection", "Competitor comparison"],
            automations=[
                _on_enter(_task("Follow up after 2 days", due_in_hours=48)),
                _after(7200, _task("URGENT: Proposal stuck for 5 days - escalate", priority="urgent")),
            ],
        ),
        StageTemplate(
            name="Proposal Accepted",
            order=4,
            color="#f59e0b",
            probability=60,
            description="Verbal or email confirmation received",
            intent="Move to legal and payment",
            required_fields=["acceptanceDate", "finalAmount"],
            sub_statuses=["Verbal Yes", "Email Confirmed"],
            failure_signals=["Payment terms not agreed"],
            automations=[
                _on_enter(
                    _task("Generate contract and send", due_in_hours=24, priority="high"),
                    _task("Generate and send invoice", due_in_hours=24),
                )
            ],
        ),
        StageTemplate(
            name="Contract Signed",
            order=5,
            color="#3b82f6",
            probability=75,
            description="Legal agreement executed",
            intent="Formal commitment secured",
            required_fields=["contractDate", "contractValue"],
            sub_statuses=["Signed", "Pending Signatures"],
            automations=[_on_enter(_notify("Contract signed! Waiting for advance payment."))],
        ),
        StageTemplate(
            name="Advance Payment Received",
            order=6,
            color="#10b981",
            probability=85,
            description="Project kickoff approved",
            intent="Begin service delivery",
            required_fields=["paymentDate", "amountReceived"],
            sub_statuses=["Full Payment", "Partial Payment"],
            automations=[
                _on_enter(
                    _task("Create project and assign team", due_in_hours=24, priority="high"),
                    _task("Schedule kickoff meeting", due_in_hours=48),
                )
            ],
        ),
        StageTemplate(
            name="Service In Progress",
            order=7,
            color="#6366f1",
            probability=90,
            description="Execution phase",
            intent="Deliver committed work",
            required_fields=["projectManager", "expectedCompletionDate"],
            sub_statuses=["On Track", "At Risk", "Client Delay", "Scope Creep"],
            failure_signals=["Timeline delay", "Scope changes", "Client unresponsive"],
            automations=[_on_enter(_task("Weekly client status update", due_in_hours=168))],
        ),
        StageTemplate(
            name="Final Delivery",
            order=8,
            color="#22c55e",
            probability=95,
            description="Work completed and delivered",
            intent="Client review and sign-off",
            required_fields=["deliveryDate"],
            sub_statuses=["Delivered", "In Review", "Revisions Requested"],
            failure_signals=["Client not reviewing"],
            automations=[_on_enter(_task("Get client feedback and testimonial", due_in_hours=72))],
        ),
        StageTemplate(
            name="Closure / Retainer Conversion",
            order=9,
            color="#059669",
            probability=100,
            description="Project closed or converted to retainer",
            intent="Upsell and retention opportunity",
            required_fields=["closureType"],
            sub_statuses=["One-time Project", "Retainer Converted", "Upsold"],
            automations=[_on_enter(_task("Discuss retainer or next project", due_in_hours=168))],
        ),
    ],
    automation_rules=[
        AutomationRuleTemplate(
            name="Proposal Follow-up Automation",
            description="Auto follow-up on proposals not responded to",
            trigger="stage_duration",
            actions=[{"type": "create_task", "config": {"title": "Follow up on proposal", "priority": "high"}}],
        )
    ],
    custom_fields=[
        CustomFieldTemplate(
            name="serviceInterest",
            label="Service Interest",
            type="select",
            required=True,
            options=["Web Development", "App Development", "Design", "Marketing", "Consulting"],
        ),
        CustomFieldTemplate(
            name="budgetRange",
            label="Budget Range",
            type="select",
            required=True,
            options=["< $5K", "$5K-$10K", "$10K-$25K", "$25K-$50K", "> $50K"],
        ),
    ],
)


RECRUITMENT = IndustryTemplate(
    id="recruitment",
    name="Recruitment & Staffing",
    description="Dual-sided candidate and client management",
    stages=[
        StageTemplate(
            name="Candidate Sourced",
            order=1,
            color="#94a3b8",
            probability=5,
            description="Resume/profile added to system",
            intent="Initial candidate discovery",
            required_fields=["name", "contact", "resume"],
            sub_statuses=["LinkedIn", "Portal", "Referral", "Database"],
            failure_signals=["Incomplete profile", "No contact info"],
            automations=[
                _on_enter(
                    # Skipped at run time: only round_robin assignment is implemented.
                    {"type": "assign_user", "config": {"role": "recruiter", "strategy": "by_specialization"}},
                    _task("Screen candidate resume", due_in_hours=24, priority="medium"),
                )
            ],
        ),
        StageTemplate(
            name="Screening Completed",
            order=2,
            color="#60a5fa",
            probability=15,
            description="Initial screening done",
            intent="Determine fit for open positions",
            required_fields=["screeningNotes", "fitStatus"],
            sub_statuses=["Strong Fit", "Moderate Fit", "Poor Fit", "Future Consideration"],
            failure_signals=["Salary mismatch", "Skills gap", "Attitude issues"],
            automations=[_on_enter(_task("Match candidate to open requirements", due_in_hours=12))],
        ),
        StageTemplate(
            name="Shortlisted for Client",
            order=3,
            color="#8b5cf6",
            probability=30,
            description="Matched to specific job requirement",
            intent="Prepare for client presentation",
            required_fields=["jobRequirement", "matchScore"],
            sub_statuses=["Preparing Profile", "Ready to Share"],
            failure_signals=["Candidate unavailable", "Better candidates found"],
            automations=[_on_enter(_task("Share candidate profile with client", due_in_hours=24, priority="high"))],
        ),
        StageTemplate(
            name="Interview Scheduled",
            order=4,
            color="#f59e0b",
            probability=45,
            description="Client interview arranged",
            intent="Facilitate interview process",
            required_fields=["interviewDate", "interviewMode", "interviewRound"],
            sub_statuses=["Round 1", "Round 2", "Final Round"],
            failure_signals=["Candidate dropout", "Interview postponed"],
            automations=[
                _on_enter(
                    _task("Send interview details and prep to candidate", due_in_hours=12, priority="high"),
                    _task("Follow up post-interview for feedback", due_in_hours=48),
                    _notify("Interview scheduled - prepare candidate"),
                )
            ],
        ),
        StageTemplate(
            name="Interview Cleared",
            order=5,
            color="#10b981",
            probability=60,
            description="Positive feedback from client",
            intent="Move towards offer",
            required_fields=["clientFeedback"],
            sub_statuses=["Strong Positive", "Conditional", "Waiting Decision"],
            failure_signals=["Salary negotiation stuck", "Candidate backing out"],
            automations=[_on_enter(_task("Negotiate salary and terms", due_in_hours=24, priority="high"))],
        ),
        StageTemplate(
            name="Offer Rolled Out",
            order=6,
            color="#3b82f6",
            probability=75,
            description="Formal offer letter sent",
            intent="Close the placement",
            required_fields=["offerCTC", "offerDate", "joiningDate"],
            sub_statuses=["Offer Sent", "Negotiating", "Offer Accepted", "Offer Declined"],
            failure_signals=["Counter offer", "Delay in acceptance", "Family concerns"],
            automations=[
                _on_enter(
                    _task("Follow up on offer acceptance daily", due_in_hours=24, priority="urgent"),
                    _notify("Offer rolled out - track acceptance!"),
                ),
                _after(4320, _task("URGENT: Offer pending for 3 days - escalate", priority="urgent")),
            ],
        ),
        StageTemplate(
            name="Offer Accepted",
            order=7,
            color="#22c55e",
            probability=85,
            description="Candidate confirmed joining",
            intent="Ensure smooth onboarding",
            required_fields=["acceptanceDate", "joiningDate"],
            sub_statuses=["Serving Notice", "Free to Join", "Background Check"],
            failure_signals=["Notice period extension", "Counter offer received"],
            automations=[
                _on_enter(
                    _task("Weekly check-in until joining date", due_in_hours=168),
                    _notify("Offer accepted! Monitor until joining."),
                )
            ],
        ),
        StageTemplate(
            name="Joined",
            order=8,
            color="#059669",
            probability=95,
            description="Candidate successfully joined",
            intent="Placement successful",
            required_fields=["actualJoiningDate"],
            sub_statuses=["Joined", "On Probation"],
            automations=[
                _on_enter(
                    _task("Invoice client for recruitment fee", due_in_hours=24, priority="high"),
                    _task("Post-joining follow-up (30 days)", due_in_hours=720),
                )
            ],
        ),
        StageTemplate(
            name="Dropout / No-show",
            order=9,
            color="#ef4444",
            probability=0,
            description="Candidate did not join or left early",
            intent="Track failure reasons",
            required_fields=["dropoutReason", "dropoutStage"],
            sub_statuses=["No Show", "Resigned Early", "Counter Offer", "Personal Reasons"],
            automations=[
                _on_enter(
                    _task("Document learnings and find replacement", priority="high"),
                    _notify("Dropout recorded - analyze reason"),
                )
            ],
        ),
    ],
    automation_rules=[
        AutomationRuleTemplate(
            name="Dropout Prediction",
            description="Alert if candidate shows dropout signals",
            trigger="field_change",
            actions=[_notify("Candidate may dropout - take action")],
        ),
        AutomationRuleTemplate(
            name="Daily Candidate Status Check",
            description="Check all active candidates daily",
            trigger="time_based",
            actions=[{"type": "create_task", "config": {"title": "Review active candidates", "priority": "medium"}}],
        ),
    ],
    custom_fields=[
        CustomFieldTemplate(
            name="noticePeriod",
            label="Notice Period",
            type="select",
            required=True,
            options=["Immediate", "15 days", "30 days", "60 days", "90 days"],
        ),
        CustomFieldTemplate(name="expectedSalary", label="Expected Salary", type="number", required=True),
        CustomFieldTemplate(name="currentRole", label="Current Role", type="text", required=True),
    ],
)


SME = IndustryTemplate(
    id="sme",
    name="SME / Founder-Led Sales",
    description="Minimal, human, founder-friendly pipeline",
    stages=[
        StageTemplate(
            name="Someone Interested",
            order=1,
            color="#94a3b8",
            probability=10,
            description="Name + phone exists",
            intent="Just captured basic info",
            required_fields=["name", "contact"],
            failure_signals=["No response in 48 hours"],
            automations=[
                _on_enter(_task("Reach out to new lead", due_in_hours=24, priority="high")),
                _after(2880, _task("REMINDER: Follow up with lead", priority="high")),
            ],
        ),
        StageTemplate(
            name="Talked Once",
            order=2,
            color="#60a5fa",
            probability=25,
            description="First real conversation happened",
            intent="Built initial rapport",
            required_fields=["firstCallNotes"],
            failure_signals=["Vague interest", "Cannot reach again"],
            automations=[_on_enter(_task("Schedule follow-up call", due_in_hours=72))],
        ),
        StageTemplate(
            name="Understood Need",
            order=3,
            color="#8b5cf6",
            probability=40,
            description="Problem + budget roughly known",
            intent="Qualified the opportunity",
            required_fields=["problem", "budget"],
            failure_signals=["Budget too low", "Not urgent"],
            automations=[_on_enter(_task("Prepare solution/quote", due_in_hours=48))],
        ),
        StageTemplate(
            name="Offered Solution",
            order=4,
            color="#f59e0b",
            probability=55,
            description="Price / proposal discussed",
            intent="Ball is in their court",
            required_fields=["quotedPrice", "proposalDate"],
            failure_signals=["Price shock", "Comparing alternatives"],
            automations=[
                _on_enter(_task("Follow up on proposal", due_in_hours=72)),
                _after(7200, _task("Check if still interested", priority="medium")),
            ],
        ),
        StageTemplate(
            name="Thinking",
            order=5,
            color="#3b82f6",
            probability=65,
            description="No decision yet, considering",
            intent="Keep warm, nurture",
            required_fields=["thinkingReason"],
            sub_statuses=["Budget Approval", "Timing Issues", "Comparing Options", "Internal Discussion"],
            failure_signals=["Going silent", "Delaying indefinitely"],
            automations=[_on_enter(_task("Check-in: Any updates?", due_in_hours=168))],
        ),
        StageTemplate(
            name="Yes (Verbal)",
            order=6,
            color="#10b981",
            probability=80,
            description="Agreed in principle",
            intent="Close the paperwork",
            required_fields=["verbalYesDate"],
            failure_signals=["Taking too long to commit"],
            automations=[
                _on_enter(
                    _task("Send invoice/agreement", due_in_hours=12, priority="high"),
                    _notify("Verbal yes! Get payment ASAP"),
                )
            ],
        ),
        StageTemplate(
            name="Payment Pending",
            order=7,
            color="#f59e0b",
            probability=85,
            description="Invoice sent, awaiting payment",
            intent="Money in the bank",
            required_fields=["invoiceNumber", "invoiceDate"],
            failure_signals=["Payment delay", "Asking for discounts"],
            automations=[_on_enter(_task("Daily payment reminder", due_in_hours=24, priority="high"))],
        ),
        StageTemplate(
            name="Closed - Won",
            order=8,
            color="#059669",
            probability=100,
            description="Money received",
            intent="Success! Deliver and delight",
            required_fields=["paymentDate", "amountReceived"],
            automations=[
                _on_enter(
                    _task("Start delivery/onboarding", due_in_hours=24, priority="high"),
                    _notify("Payment received! Start work!"),
                )
            ],
        ),
        StageTemplate(
            name="Closed - Lost",
            order=9,
            color="#ef4444",
            probability=0,
            description="Not happening",
            intent="Learn and move on",
            required_fields=["lostReason"],
            sub_statuses=["Price Too High", "Went with Competitor", "Not Right Time", "Not Interested"],
            automations=[_on_enter(_task("Document learnings", due_in_hours=24))],
        ),
    ],
    automation_rules=[
        AutomationRuleTemplate(
            name="Daily Pipeline Review",
            description="Remind founder to review all deals daily",
            trigger="time_based",
            actions=[{"type": "create_task", "config": {"title": "Review all open deals", "priority": "medium"}}],
        ),
        AutomationRuleTemplate(
            name="Silence Alert",
            description="Alert if no activity on deal for 3 days",
            trigger="stage_duration",
            actions=[{"type": "create_task", "config": {"title": "Deal is silent - reach out", "priority": "high"}}],
        ),
    ],
    custom_fields=[
        CustomFieldTemplate(
            name="source",
            label="How did they find you?",
            type="select",
            required=True,
            options=["Referral", "Website", "Social Media", "Event", "Other"],
        ),
        CustomFieldTemplate(
            name="urgency",
            label="How urgent?",
            type="select",
            required=False,
            options=["ASAP", "This month", "Next quarter", "Just exploring"],
        ),
    ],
)


INDUSTRY_TEMPLATES: dict[str, IndustryTemplate] = {
    template.id: template for template in (EDUCATION, AGENCY, RECRUITMENT, SME)
}


def get_template(industry_id: str) -> IndustryTemplate | None:
    return INDUSTRY_TEMPLATES.get(industry_id)


def list_templates() -> list[IndustryTemplateSummary]:
    return [
        IndustryTemplateSummary(
            id=template.id,
            name=template.name,
            description=template.description,
            stage_count=len(template.stages),
            automation_count=sum(len(stage.automations) for stage in template.stages),
        )
        for template in INDUSTRY_TEMPLATES.values()
    ]


class IndustryTemplateService:
    entity_type = "crm.industry_template"

    def apply_template(self, session: Session, actor_user: ActorUser, industry_id: str) -> IndustryApplyResponse:
        """Install a template's pipeline, stage automations and rules for the actor's organization.

        The organization's default pipeline is reused (or created) and its stages
        are replaced; deals sitting on a removed stage move to the template's first
        stage and start a new visit there.
        """
        if not actor_user.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only admins can apply industry templates")
        organization_id = _require_organization(actor_user)
        template = get_template(industry_id)
        if template is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found")

        now = utcnow()
        organization = session.get(CRMOrganization, organization_id)
        if organization is None:
            organization = CRMOrganization(id=organization_id, name=str(organization_id))
            session.add(organization)
        previous_industry = organization.industry
        organization.industry = template.id
        organization.settings_json = json.dumps(
            {
                "applied_at": now.isoformat(),
                "template_version": TEMPLATE_VERSION,
                "custom_fields": [
                    {
                        "name": custom_field.name,
                        "label": custom_field.label,
                        "type": custom_field.type,
                        "options": custom_field.options,
                        "required": custom_field.required,
                        "entity": "contact",
                    }
                    for custom_field in template.custom_fields
                ],
            }
        )

        pipeline = session.scalar(
            select(CRMPipeline)
            .where(and_(CRMPipeline.organization_id == organization_id, CRMPipeline.is_default.is_(True)))
            .options(selectinload(CRMPipeline.stages))
            .order_by(CRMPipeline.created_at.asc())
            .limit(1)
        )
        if pipeline is None:
            pipeline = CRMPipeline(organization_id=organization_id, name=f"{template.name} Pipeline", is_default=True)
            session.add(pipeline)
            session.flush()

        old_stages = list(pipeline.stages)
        for index, stage in enumerate(old_stages):
            stage.position = -(index + 1)
        session.flush()

        new_stages: list[CRMPipelineStage] = []
        automation_count = 0
        for stage_template in sorted(template.stages, key=lambda item: item.order):
            stage = CRMPipelineStage(
                pipeline_id=pipeline.id,
                name=stage_template.name,
                position=stage_template.order,
                color=stage_template.color,
                probability=stage_template.probability,
                description=stage_template.description,
                intent=stage_template.intent,
                required_fields=list(stage_template.required_fields),
                sub_statuses=list(stage_template.sub_statuses),
                failure_signals=list(stage_template.failure_signals),
            )
            session.add(stage)
            session.flush()
            for automation_template in stage_template.automations:
                session.add(
                    CRMPipelineStageAutomation(
                        organization_id=organization_id,
                        stage_id=stage.id,
                        trigger_type=automation_template.trigger,
                        duration_minutes=automation_template.duration,
                        actions_json=normalize_actions(automation_template.actions),
                        is_active=True,
                    )
                )
                automation_count += 1
            new_stages.append(stage)
        session.flush()

        moved_deals = self._move_deals_off_stages(session, actor_user, old_stages, new_stages[0], now)
        for stage in old_stages:
            session.delete(stage)
        session.flush()

        for rule_template in template.automation_rules:
            session.add(
                CRMAutomationRule(
                    organization_id=organization_id,
                    name=rule_template.name,
                    description=rule_template.description,
                    trigger=rule_template.trigger,
                    trigger_config_json={},
                    actions_json=normalize_actions(rule_template.actions),
                    industry_type=template.id,
                    is_active=True,
                )
            )

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=template.id,
            action="apply",
            before={"industry": previous_industry},
            after={
                "industry": template.id,
                "pipeline_id": str(pipeline.id),
                "stages": len(new_stages),
                "automations": automation_count,
                "rules": len(template.automation_rules),
                "deals_moved": moved_deals,
            },
            correlation_id=actor_user.correlation_id,
            organization_id=str(organization_id),
        )
        session.commit()
        logger.info(
            "industry_template.applied",
            extra={
                "organization_id": str(organization_id),
                "industry_id": template.id,
                "pipeline_id": str(pipeline.id),
            },
        )
        return IndustryApplyResponse(
            success=True,
            message=f"{template.name} template applied successfully",
            pipeline_id=pipeline.id,
        )

    def _move_deals_off_stages(
        self,
        session: Session,
        actor_user: ActorUser,
        old_stages: list[CRMPipelineStage],
        target_stage: CRMPipelineStage,
        now: datetime,
    ) -> int:
        old_stage_ids = [stage.id for stage in old_stages]
        if not old_stage_ids:
            return 0
        deals = session.scalars(select(CRMDeal).where(CRMDeal.stage_id.in_(old_stage_ids))).all()
        for deal in deals:
            from_stage_id = deal.stage_id
            deal.stage_id = target_stage.id
            deal.stage_entered_at = now
            deal.stage_sequence = int(deal.stage_sequence) + 1
            deal.row_version = int(deal.row_version) + 1
            session.add(
                CRMDealStageHistory(
                    deal_id=deal.id,
                    from_stage_id=from_stage_id,
                    to_stage_id=target_stage.id,
                    stage_sequence=deal.stage_sequence,
                    entered_at=now,
                    changed_by_user_id=actor_user.user_uuid,
                )
            )
        session.flush()
        return len(deals)


industry_template_service = IndustryTemplateService()


