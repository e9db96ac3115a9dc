from . import billing, credits, workflows

__all__ = ["billing", "credits", "workflows"]
