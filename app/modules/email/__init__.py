"""
Módulo de email: servicio SMTP con templates Jinja2 y tareas de Celery.
"""

from .service import email_service

__all__ = ['email_service']
