from io import BytesIO
from pathlib import Path

from xhtml2pdf import pisa


def link_callback_para(root_path):
    """Cria o callback que resolve arquivos locais (CSS/imagens) para o xhtml2pdf."""
    def _callback(uri: str, _rel: str | None = None) -> str:
        if not uri:
            return uri

        if uri.startswith('http://') or uri.startswith('https://') or uri.startswith('data:'):
            return uri

        if uri.startswith('/static/'):
            return str(Path(root_path) / uri.lstrip('/'))

        if uri.startswith('static/'):
            return str(Path(root_path) / uri)

        return str((Path(root_path) / uri).resolve())
    return _callback


def gerar_pdf(html: str, root_path) -> bytes | None:
    """Renderiza o HTML em PDF; retorna None quando o xhtml2pdf reporta erro."""
    pdf_buffer = BytesIO()
    status = pisa.CreatePDF(html, dest=pdf_buffer, link_callback=link_callback_para(root_path))
    if status.err:
        return None
    return pdf_buffer.getvalue()
