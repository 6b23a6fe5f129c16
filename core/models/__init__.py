"""Core domain models."""

from core.models.base import BillingModel, ZERO, quantize
from core.models.customer import (
    Customer, CustomerStatus, Project, CustomerProject, CustomerProjectCreate,
)
from core.models.cost import (
    RawCostEntry, AttributedCost, RawCostTotals, CustomerCost, ProjectCost,
)
from core.models.pricing import (
    NO_DISCOUNT, UNMAPPED_GROUP_CODE,
    PricingListStatus, PricingRuleType,
    SkuGroup, SkuGroupCreate, SkuGroupMapping,
    PricingList, PricingListCreate, PricingRule, PricingRuleCreate,
    PricingRuleItem, PricingListWithRules,
)
from core.models.special_rule import (
    SpecialRuleType, SpecialRuleCreate, SpecialRule, RuleImpact,
    SpecialRuleEffect, SpecialRulesResult,
)
from core.models.credit import (
    CreditType, CreditStatus, CreditCreate, Credit, CreditLedgerEntry,
    CreditWithLedger, CreditApplication, CreditTypeSummary, CreditSummary,
)
from core.models.invoice import (
    InvoiceStatus, InvoiceLineItem, Invoice, InvoiceSummary,
    InvoiceTotals, CustomerInvoiced,
)
from core.models.invoice_run import (
    InvoiceRunStatus, InvoiceRunCreate, InvoiceRunSummary, InvoiceRun, InvoiceRunDetail,
    ConfigSnapshot, RunValidationIssue, RunValidation,
)
from core.models.reconciliation import (
    ReconciliationSummary, CustomerReconciliation, UnassignedProject,
    RunReference, ReconciliationReport,
)

__all__ = [
    # Base
    "BillingModel", "ZERO", "quantize",
    # Customer
    "Customer", "CustomerStatus", "Project", "CustomerProject", "CustomerProjectCreate",
    # Cost
    "RawCostEntry", "AttributedCost", "RawCostTotals", "CustomerCost", "ProjectCost",
    # Pricing
    "NO_DISCOUNT", "UNMAPPED_GROUP_CODE",
    "PricingListStatus", "PricingRuleType",
    "SkuGroup", "SkuGroupCreate", "SkuGroupMapping",
    "PricingList", "PricingListCreate", "PricingRule", "PricingRuleCreate",
    "PricingRuleItem", "PricingListWithRules",
    # Special rules
    "SpecialRuleType", "SpecialRuleCreate", "SpecialRule", "RuleImpact",
    "SpecialRuleEffect", "SpecialRulesResult",
    # Credit
    "CreditType", "CreditStatus", "CreditCreate", "Credit", "CreditLedgerEntry",
    "CreditWithLedger", "CreditApplication", "CreditTypeSummary", "CreditSummary",
    # Invoice
    "InvoiceStatus", "InvoiceLineItem", "Invoice", "InvoiceSummary",
    "InvoiceTotals", "CustomerInvoiced",
    # InvoiceRun
    "InvoiceRunStatus", "InvoiceRunCreate", "InvoiceRunSummary", "InvoiceRun", "InvoiceRunDetail",
    "ConfigSnapshot", "RunValidationIssue", "RunValidation",
    # Reconciliation
    "ReconciliationSummary", "CustomerReconciliation", "UnassignedProject",
    "RunReference", "ReconciliationReport",
]
