"""
Coaching Pipeline Configuration and Constants

Package catalog, fee settings, consumption limits and processor settings
are defined here. All amounts are integer minor units (CAD cents).
"""

import os

# ==================== PACKAGE CATALOG (CAD cents) ====================
PACKAGE_PRICING = {
    "badminton": {
        "1": {"price": 4725, "clips": 5, "days": 3},
        "2": {"price": 5400, "clips": 7, "days": 5},
        "3": {"price": 6075, "clips": 10, "days": 7},
        "subscription": {"price": 9450, "clips": 50, "days": 30},
    },
    "golf": {
        "1": {"price": 5400, "clips": 5, "days": 3},
        "2": {"price": 6075, "clips": 7, "days": 5},
        "3": {"price": 6750, "clips": 10, "days": 7},
        "subscription": {"price": 10125, "clips": 50, "days": 30},
    },
}

DEFAULT_CURRENCY = "cad"

# ==================== FEES ====================
PLATFORM_FEE_PERCENTAGE = float(os.environ.get("PLATFORM_FEE_PERCENTAGE", "15"))

# ==================== FUND ROUTING ====================
ROUTING_DESTINATION = "destination"
ROUTING_SEPARATE_TRANSFER = "separate_transfer"
ROUTING_MODES = {ROUTING_DESTINATION, ROUTING_SEPARATE_TRANSFER}
DEFAULT_ROUTING_MODE = ROUTING_SEPARATE_TRANSFER

# Legacy metadata value written by older checkout clients
LEGACY_DESTINATION_PAYMENT_TYPE = "destination_charge"

# ==================== CONSUMPTION LIMITS ====================
DAILY_MESSAGE_LIMIT = 5
DAILY_LIMIT_TIMEZONE = os.environ.get("DAILY_LIMIT_TIMEZONE", "UTC")

# Player identities that never get a conversation
PLACEHOLDER_PLAYER_IDS = {"temp_user", "temp_player", "anonymous", "unauthenticated"}
PLACEHOLDER_PLAYER_NAMES = {"Player"}

# ==================== PAYMENT PROCESSOR ====================
PROCESSOR_TIMEOUT_SECONDS = float(os.environ.get("PROCESSOR_TIMEOUT_SECONDS", "10"))
PROCESSOR_LIST_LIMIT = 100

# ==================== CONNECTED ACCOUNT ONBOARDING ====================
APP_URL = os.environ.get("APP_URL", "http://localhost:3000").rstrip("/")
CONNECT_DEFAULT_COUNTRY = os.environ.get("CONNECT_DEFAULT_COUNTRY", "CA")
ONBOARDING_REFRESH_PATH = "/coach/earnings?refresh=true"
ONBOARDING_RETURN_PATH = "/coach/earnings?success=true"

# Processor payment states that mean the charge never completed
INCOMPLETE_PAYMENT_STATUSES = {
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "requires_capture",
    "canceled",
}

# ==================== COLLECTIONS ====================
ENTITLEMENTS_COLLECTION = "coaching_sessions"
CONVERSATIONS_COLLECTION = "conversations"
MESSAGES_COLLECTION = "messages"
TRANSFERS_COLLECTION = "payment_transfers"
COACH_ACCOUNTS_COLLECTION = "coach_connect_accounts"
WEBHOOK_LOGS_COLLECTION = "webhook_logs"

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "CHAT_EXPIRED": "This coaching session has expired. Purchase a new package to keep chatting.",
    "CLIPS_EXHAUSTED": "No video clips remaining for this coaching session.",
    "DAILY_LIMIT_REACHED": "Daily message limit reached. Try again tomorrow.",
    "ROUTING_UNAVAILABLE": "Coach has not completed payment account setup.",
    "TRANSFER_FAILED": "Transfer to the coach account failed.",
    "ENTITLEMENT_PERSIST_FAILED": "Payment succeeded but the coaching session could not be saved.",
    "QUOTA_RESOLUTION_FAILED": "Could not determine the clip allowance for this payment.",
    "PACKAGE_NOT_FOUND": "Unknown package.",
    "PAYMENT_EVENT_INVALID": "Malformed payment event.",
    "PAYMENT_NOT_SUCCEEDED": "Payment has not succeeded.",
    "INVALID_SIGNATURE": "Invalid webhook signature.",
    "CONVERSATION_NOT_FOUND": "Conversation not found.",
    "CONVERSATION_CONFLICT": "Conversation changed while it was being updated. Try again.",
    "ACCOUNT_NOT_FOUND": "No connected payment account for this coach. Create one first.",
    "ENTITLEMENT_NOT_FOUND": "Coaching session not found.",
    "PROCESSOR_ERROR": "Payment processor request failed.",
}
