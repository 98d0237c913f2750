"""auth/ -- Credential lifecycle core for StepGuard.

Password hashing, signed tokens, TOTP, single-use challenges, the AuthService
orchestrator, and the expiry sweeper.

Layer rule: auth/ imports stdlib, third-party libraries, core/, and the
Notifier protocol from notify/. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
