from ghl_whatsapp.session.evolution.client import EvolutionSessionClient

__all__ = ["EvolutionSessionClient"]
