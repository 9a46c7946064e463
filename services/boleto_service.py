from datetime import date

from models import BoletoParcela, PARCELA_STATUS_LABELS
from utils.financeiro import gerar_parcelas, status_agregado_boleto

# Transições permitidas a partir de parcelas em aberto. Parcelas pagas ou
# canceladas não mudam sozinhas, mas o operador pode editá-las livremente.
TRANSICOES_PARCELA = {
    'pendente': {'pago', 'vencido', 'cancelado'},
    'vencido': {'pago', 'cancelado'},
}

FILTROS_BOLETO = [
    ('ativos', 'Ativos'),
    ('todos', 'Todos'),
    ('quitado', 'Quitados'),
    ('vencido', 'Vencidos'),
    ('proximo', 'A vencer'),
    ('pendente', 'Pendentes'),
]


def montar_parcelas(boleto):
    """Regera o cronograma de parcelas do boleto a partir do total, da quantidade e do 1º vencimento."""
    cronograma = gerar_parcelas(boleto.total_amount, boleto.number_of_installments, boleto.initial_due_date)
    boleto.installments.clear()
    for item in cronograma:
        boleto.installments.append(BoletoParcela(
            parcel_number=item['numero'],
            value=item['valor'],
            due_date=item['vencimento'],
            status=item['status'],
        ))
    return boleto.installments


def marcar_parcelas_vencidas(boleto, hoje: date) -> bool:
    """Marca como vencidas as parcelas pendentes com vencimento anterior a `hoje`.

    Retorna True quando alguma parcela mudou, para que a chamada decida se grava.
    """
    alterou = False
    for parcela in boleto.installments:
        if parcela.status == 'pendente' and parcela.due_date and parcela.due_date < hoje:
            parcela.status = 'vencido'
            alterou = True
    return alterou


def alterar_status_parcela(parcela, novo_status: str, hoje: date):
    """Aplica a alteração de status feita pelo operador em uma parcela."""
    if novo_status not in PARCELA_STATUS_LABELS:
        raise ValueError('Status de parcela inválido.')

    atual = parcela.status
    if novo_status != atual and atual in TRANSICOES_PARCELA and novo_status not in TRANSICOES_PARCELA[atual]:
        raise ValueError(
            f'Não é possível alterar a parcela {parcela.parcel_number} de '
            f'{PARCELA_STATUS_LABELS[atual]} para {PARCELA_STATUS_LABELS[novo_status]}.'
        )

    parcela.status = novo_status
    if novo_status == 'pago':
        parcela.payment_date = parcela.payment_date or hoje
    else:
        parcela.payment_date = None
    return parcela


def filtrar_boletos(boletos, termo: str, filtro: str, hoje: date):
    """Filtra boletos por cliente/ID e pelo status agregado; retorna pares (boleto, status)."""
    termo = (termo or '').strip().lower()
    linhas = []
    for boleto in boletos:
        if termo and termo not in (boleto.client_name or '').lower() and termo != str(boleto.id):
            continue

        status = status_agregado_boleto(boleto.installments, hoje)
        if filtro == 'ativos' and status['chave'] in ('quitado', 'sem_parcelas'):
            continue
        if filtro == 'pendente' and status['chave'] not in ('pendente', 'proximo'):
            continue
        if filtro not in ('ativos', 'todos', 'pendente') and status['chave'] != filtro:
            continue
        linhas.append((boleto, status))
    return linhas
