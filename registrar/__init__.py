"""
Registrar Service - Tournament Registration Platform

Responsibilities:
- Tournament lifecycle (create, update, soft delete, restore)
- Competitor registration within registration windows
- Account registration, login, OAuth sign-in and admin approval
- Role-based access control
- Audit trail of every state change
"""
