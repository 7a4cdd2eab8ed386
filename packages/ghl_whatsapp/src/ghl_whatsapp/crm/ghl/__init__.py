from ghl_whatsapp.crm.ghl.client import GoHighLevelClient

__all__ = ["GoHighLevelClient"]
