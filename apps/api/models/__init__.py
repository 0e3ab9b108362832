"""Models package."""

from .user import User
from .credit_package import CreditPackage, CreditPackageStatus, CreditTransType
from .credit_hold import CreditHold, CreditHoldStatus, PackageAllocation
from .credit_transaction import CreditTransaction
from .video_job import VideoJob, VideoStatus
