"""Global constants for the after-sales core."""

from __future__ import annotations

# ============================================================================
# Database
# ============================================================================

DATABASE_MAX_RETRIES = 5
DATABASE_RETRY_BASE_DELAY_SECONDS = 1

# Attempts for a full read-modify-write cycle that lost a version race
UNIT_MAX_ATTEMPTS = 3
UNIT_RETRY_BASE_DELAY_SECONDS = 0.05

# ============================================================================
# Timeouts
# ============================================================================

PENDING_APPROVAL_TIMEOUT_HOURS = 72
PENDING_RETURN_TIMEOUT_HOURS = 168  # 7 days
PENDING_RECEIVE_TIMEOUT_HOURS = 72

SWEEP_INTERVAL_SECONDS = 300
SWEEP_BATCH_SIZE = 100

# ============================================================================
# Auto Approval
# ============================================================================

AUTO_APPROVE_THRESHOLD_CENTS = 20000  # 200.00
LOW_RISK_REASONS = ("dont_want",)

# ============================================================================
# Modifications and Refunds
# ============================================================================

MAX_MODIFICATIONS = 3
MAX_REFUND_RETRIES = 3

# ============================================================================
# Validation Limits
# ============================================================================

REFERENCE_NUMBER_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500
MAX_PROOF_IMAGES = 9
CARRIER_MAX_LENGTH = 50
TRACKING_NUMBER_MAX_LENGTH = 50
APPLICANT_NAME_MAX_LENGTH = 50

# ============================================================================
# Business Number Prefixes
# ============================================================================

CASE_NUMBER_PREFIX = "AS"
REFUND_NUMBER_PREFIX = "RF"
RETURN_NUMBER_PREFIX = "RT"
EXCHANGE_NUMBER_PREFIX = "EX"

# ============================================================================
# Audit Retention
# ============================================================================

AUDIT_RETENTION_DAYS = 365

# ============================================================================
# Carriers
# ============================================================================

# (code, name, sort_order, tracking URL template); {tracking_no} is substituted
DEFAULT_CARRIERS = (
    (
        "SF",
        "SF Express",
        1,
        "https://www.sf-express.com/chn/sc/dynamic_function/waybill/#search/bill-number/{tracking_no}",
    ),
    ("STO", "STO Express", 2, "https://www.sto.cn/query.html?no={tracking_no}"),
    ("YD", "Yunda Express", 3, "https://www.yundaex.com/index.php/query/index.html?no={tracking_no}"),
    ("ZTO", "ZTO Express", 4, "https://www.zto.com/Home/QueryOrderInfo?txtBillCode={tracking_no}"),
    ("YTO", "YTO Express", 5, "https://www.yto.net.cn/query.html?no={tracking_no}"),
    ("EMS", "China Post EMS", 6, "https://www.ems.com.cn/queryList?mailNum={tracking_no}"),
    ("JD", "JD Logistics", 7, "https://www.jd.com/track?waybillCode={tracking_no}"),
    ("DBL", "Deppon Express", 8, "https://www.deppon.com/internetBillQuery.action?billNo={tracking_no}"),
    ("ZJS", "ZJS Express", 9, "http://www.zjs.com.cn/query/single.asp?OrderNumber={tracking_no}"),
    ("HTKY", "Best Express", 10, "https://www.800best.com/queryOrder.do?order={tracking_no}"),
    ("UC", "UC Express", 11, "http://www.uc56.com/guest/trackQuery.htm?trackNo={tracking_no}"),
    ("TTKDEX", "TTK Express", 12, "http://www.ttkdex.com/ttkd_single_result.aspx?wen={tracking_no}"),
    ("FAST", "Fast Express", 13, "http://www.fastexpress.com.cn/cn/track.html?billcode={tracking_no}"),
    ("AJ", "Anjie Express", 14, "http://www.anjie56.com/QueryResult.aspx?OrderNumber={tracking_no}"),
    ("OTHER", "Other", 99, None),
)

CARRIER_CODE_MAX_LENGTH = 20
TRACKING_URL_TEMPLATE_MAX_LENGTH = 500
