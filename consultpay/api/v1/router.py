"""Main API router that includes all endpoint routers."""

from fastapi import APIRouter

from consultpay.api.v1 import (
    admin,
    bank_accounts,
    bookings,
    cron,
    disputes,
    earnings,
    payments,
    payouts,
    returns,
    webhooks,
)

api_router = APIRouter()

# Bookings
api_router.include_router(bookings.router, prefix="/bookings", tags=["Bookings"])

# Payments
api_router.include_router(payments.router, prefix="/payments", tags=["Payments"])
api_router.include_router(returns.router, prefix="/payments/return", tags=["Payments"])

# Earnings
api_router.include_router(earnings.router, prefix="/earnings", tags=["Earnings"])

# Disputes
api_router.include_router(disputes.router, prefix="/disputes", tags=["Disputes"])

# Bank account
api_router.include_router(bank_accounts.router, prefix="/bank-account", tags=["Bank Account"])

# Payouts
api_router.include_router(payouts.router, prefix="/payouts", tags=["Payouts"])

# Admin
api_router.include_router(admin.router, prefix="/admin", tags=["Admin"])

# Webhooks
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])

# Cron
api_router.include_router(cron.router, prefix="/cron", tags=["Cron"])
