"""
MedBook Appointment Service

FastAPI service for booking doctor appointment slots: capacity-aware slot
leasing, payment holds, appointment lifecycle, doctor ratings and video
consultations.
"""

__version__ = "1.0.0"
