# Provider-facing routes only; client endpoints live in the host application.
from . import webhooks as webhooks
