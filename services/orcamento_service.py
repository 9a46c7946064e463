from datetime import date, datetime
from decimal import Decimal

from models import BudgetItem, Client, db
from utils.financeiro import calcular_totais_orcamento


def montar_itens_orcamento(itens_dto, produtos_por_id, itens_gravados_por_id=None) -> list[dict]:
    """Congela nome, preço de venda e custo de cada produto no momento do orçamento.

    Linhas cujo produto foi excluído reaproveitam o congelamento já gravado
    (`itens_gravados_por_id`), mudando apenas a quantidade.
    """
    itens_gravados_por_id = itens_gravados_por_id or {}
    itens = []
    for item in itens_dto:
        if item.snapshot_item_id:
            gravado = itens_gravados_por_id.get(item.snapshot_item_id)
            if gravado is None:
                raise ValueError('Item do orçamento não encontrado.')
            product_id = None
            product_name = gravado.product_name
            unit_price = Decimal(gravado.unit_price or 0).quantize(Decimal('0.01'))
            unit_cost = Decimal(gravado.unit_cost or 0).quantize(Decimal('0.01'))
        else:
            produto = produtos_por_id.get(item.product_id)
            if produto is None:
                raise ValueError('Produto do orçamento não encontrado.')
            product_id = produto.id
            product_name = produto.name
            unit_price = Decimal(produto.sale_price or 0).quantize(Decimal('0.01'))
            unit_cost = Decimal(produto.cost_price or 0).quantize(Decimal('0.01'))

        itens.append({
            'product_id': product_id,
            'product_name': product_name,
            'quantity': int(item.quantity),
            'unit_price': unit_price,
            'unit_cost': unit_cost,
            'total_price': (unit_price * int(item.quantity)).quantize(Decimal('0.01')),
        })
    return itens


def aplicar_orcamento(budget, dto, cliente, produtos_por_id):
    """Preenche o orçamento com os dados do DTO, recalculando itens e totais."""
    itens_gravados = {item.id: item for item in budget.items if item.id is not None and item.product_id is None}
    itens = montar_itens_orcamento(dto.items, produtos_por_id, itens_gravados)
    totais = calcular_totais_orcamento(
        itens,
        tipo_desconto=dto.discount_type,
        desconto=dto.discount_input,
        frete=dto.shipping_cost,
        impostos=dto.tax_amount,
    )

    budget.client_id = cliente.id
    budget.client_name = cliente.name
    budget.status = dto.status
    budget.discount_type = dto.discount_type
    budget.discount_input = Decimal(dto.discount_input).quantize(Decimal('0.01'))
    budget.applied_discount_amount = totais['desconto_aplicado']
    budget.shipping_cost = totais['frete']
    budget.tax_amount = totais['impostos']
    budget.delivery_time = (dto.delivery_time or '').strip() or None
    budget.payment_method = (dto.payment_method or '').strip() or None
    budget.total_amount = totais['total']
    budget.material_cost_internal = totais['custo_material']
    budget.updated_at = datetime.utcnow()

    budget.items.clear()
    for position, item in enumerate(itens):
        budget.items.append(BudgetItem(position=position, **item))
    return budget


def sincronizar_budget_ids(budget, cliente_anterior_id=None, removido=False):
    """Mantém a lista desnormalizada `budget_ids` dos clientes envolvidos."""
    if cliente_anterior_id and cliente_anterior_id != budget.client_id:
        anterior = db.session.get(Client, cliente_anterior_id)
        if anterior:
            anterior.budget_ids = [bid for bid in anterior.budget_ids if bid != budget.id]

    cliente = db.session.get(Client, budget.client_id)
    if not cliente:
        return
    ids = [bid for bid in cliente.budget_ids if bid != budget.id]
    if not removido:
        ids.append(budget.id)
    cliente.budget_ids = ids


def filtrar_orcamentos(orcamentos, termo: str = '', status: str = 'all'):
    """Filtra por nome do cliente ou ID e por status."""
    termo = (termo or '').strip().lower()
    resultado = []
    for orcamento in orcamentos:
        if termo and termo not in (orcamento.client_name or '').lower() and termo != str(orcamento.id):
            continue
        if status and status != 'all' and orcamento.status != status:
            continue
        resultado.append(orcamento)
    return resultado


def filtrar_relatorio(orcamentos, inicio: date | None, fim: date | None, status: str = 'all', client_id: int | None = None):
    """Seleciona orçamentos do relatório pelo período de criação, status e cliente."""
    resultado = []
    for orcamento in filtrar_orcamentos(orcamentos, status=status):
        criado_em = orcamento.created_at.date()
        if inicio and criado_em < inicio:
            continue
        if fim and criado_em > fim:
            continue
        if client_id and orcamento.client_id != client_id:
            continue
        resultado.append(orcamento)
    return resultado


def totais_relatorio(orcamentos) -> dict:
    """Total vendido e margem estimada (total menos custo de material) dos aprovados."""
    aprovados = [o for o in orcamentos if o.status == 'approved']
    total_vendido = sum((Decimal(o.total_amount or 0) for o in aprovados), Decimal('0.00'))
    margem = sum(
        (Decimal(o.total_amount or 0) - Decimal(o.material_cost_internal or 0) for o in aprovados),
        Decimal('0.00'),
    )
    return {'total_vendido': total_vendido, 'margem_estimada': margem, 'quantidade': len(orcamentos)}
