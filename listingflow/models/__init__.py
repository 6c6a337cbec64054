from listingflow.models.user import User
from listingflow.models.subjects import Listing, Advertisement, Transaction
from listingflow.models.workflow_instance import WorkflowInstance
from listingflow.models.payment_attachment import PaymentAttachment
from listingflow.models.workflow_transition import WorkflowTransition
from listingflow.models.job_run import JobRun

__all__ = [
    "User",
    "Listing",
    "Advertisement",
    "Transaction",
    "WorkflowInstance",
    "PaymentAttachment",
    "WorkflowTransition",
    "JobRun",
]
