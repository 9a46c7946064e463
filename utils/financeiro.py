import calendar
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP

CENTAVOS = Decimal('0.01')
ZERO = Decimal('0.00')

MAX_PARCELAS = 36
DIAS_ENTRE_PARCELAS = 30

ALIQUOTA_FGTS = Decimal('0.08')
ALIQUOTA_INSS = Decimal('0.075')
ALIQUOTA_COPARTICIPACAO_VT = Decimal('0.06')
VALE_REFEICAO_DIARIO = Decimal('15.00')
VALE_TRANSPORTE_DIARIO = Decimal('10.00')

STATUS_PARCELA_QUITADA = ('pago', 'cancelado')

MESES_ABREVIADOS = ['jan', 'fev', 'mar', 'abr', 'mai', 'jun', 'jul', 'ago', 'set', 'out', 'nov', 'dez']


def _dinheiro(valor) -> Decimal:
    return Decimal(valor or 0).quantize(CENTAVOS, rounding=ROUND_HALF_UP)


def _como_data(valor):
    if isinstance(valor, datetime):
        return valor.date()
    return valor


def calcular_margem_lucro(custo, venda):
    """Margem percentual do preço de venda sobre o custo (0 quando não há venda)."""
    custo_dec = Decimal(custo or 0)
    venda_dec = Decimal(venda or 0)
    if venda_dec <= 0:
        return Decimal('0.00')
    margem = ((venda_dec - custo_dec) / venda_dec) * Decimal('100')
    return margem.quantize(Decimal('0.01'))


def gerar_parcelas(total, quantidade, primeiro_vencimento: date) -> list[dict]:
    """Divide `total` em `quantidade` parcelas com vencimentos a cada 30 dias.

    Cada parcela recebe o valor truncado em centavos; a última absorve o
    resto para que a soma seja exatamente igual ao total.
    """
    total_dec = _dinheiro(total)
    quantidade = int(quantidade or 0)
    if total_dec <= 0 or quantidade <= 0:
        return []
    if quantidade > MAX_PARCELAS:
        raise ValueError(f'O número máximo de parcelas é {MAX_PARCELAS}.')

    base_value = (total_dec / Decimal(quantidade)).quantize(CENTAVOS, rounding=ROUND_DOWN)
    primeiro_vencimento = _como_data(primeiro_vencimento)

    parcelas = []
    for indice in range(quantidade):
        valor = base_value
        if indice == quantidade - 1:
            valor = (total_dec - base_value * (quantidade - 1)).quantize(CENTAVOS)
        parcelas.append({
            'numero': indice + 1,
            'valor': valor,
            'vencimento': primeiro_vencimento + timedelta(days=DIAS_ENTRE_PARCELAS * indice),
            'status': 'pendente',
        })
    return parcelas


def dias_uteis_no_mes(referencia: date) -> int:
    """Conta os dias de segunda a sexta do mês de `referencia` (sem feriados)."""
    referencia = _como_data(referencia)
    _, ultimo_dia = calendar.monthrange(referencia.year, referencia.month)
    return sum(
        1
        for dia in range(1, ultimo_dia + 1)
        if date(referencia.year, referencia.month, dia).weekday() < 5
    )


def calcular_encargos_folha(
    salario,
    vale_refeicao: bool,
    vale_transporte: bool,
    dias_uteis: int,
    *,
    valor_diario_refeicao=VALE_REFEICAO_DIARIO,
    valor_diario_transporte=VALE_TRANSPORTE_DIARIO,
) -> dict:
    """Estimativa simplificada dos encargos do empregador.

    Não é um cálculo de folha em conformidade legal: não há faixas
    progressivas nem tetos, apenas alíquotas fixas sobre o salário bruto.
    """
    salario_dec = Decimal(salario or 0)
    dias = Decimal(max(0, int(dias_uteis or 0)))

    fgts = _dinheiro(salario_dec * ALIQUOTA_FGTS)
    decimo_terceiro = _dinheiro(salario_dec / Decimal('12'))
    ferias = _dinheiro((salario_dec + salario_dec / Decimal('3')) / Decimal('12'))
    custo_refeicao = _dinheiro(dias * Decimal(valor_diario_refeicao)) if vale_refeicao else ZERO
    custo_transporte = _dinheiro(dias * Decimal(valor_diario_transporte)) if vale_transporte else ZERO

    total_encargos = fgts + decimo_terceiro + ferias + custo_refeicao + custo_transporte
    return {
        'salario': _dinheiro(salario_dec),
        'fgts': fgts,
        'decimo_terceiro': decimo_terceiro,
        'ferias': ferias,
        'vale_refeicao': custo_refeicao,
        'vale_transporte': custo_transporte,
        'dias_uteis': int(dias),
        'total_encargos': total_encargos,
        'custo_total_mensal': _dinheiro(salario_dec) + total_encargos,
    }


def calcular_salario_liquido(salario, vale_transporte: bool) -> dict:
    """Estimativa do salário líquido: bruto menos INSS (7,5%) e coparticipação do VT (6%)."""
    salario_dec = _dinheiro(salario)
    inss = _dinheiro(salario_dec * ALIQUOTA_INSS)
    coparticipacao = _dinheiro(salario_dec * ALIQUOTA_COPARTICIPACAO_VT) if vale_transporte else ZERO
    return {
        'salario': salario_dec,
        'inss': inss,
        'coparticipacao_vale_transporte': coparticipacao,
        'salario_liquido': salario_dec - inss - coparticipacao,
    }


def calcular_totais_orcamento(itens, tipo_desconto='fixed', desconto=0, frete=0, impostos=0) -> dict:
    """Totais de um orçamento a partir de itens com `quantity`, `unit_price` e `unit_cost`."""
    subtotal = ZERO
    custo_material = ZERO
    for item in itens:
        quantidade = Decimal(item['quantity'])
        subtotal += _dinheiro(Decimal(item['unit_price']) * quantidade)
        custo_material += _dinheiro(Decimal(item.get('unit_cost') or 0) * quantidade)

    desconto_dec = Decimal(desconto or 0)
    if desconto_dec < 0:
        raise ValueError('O desconto não pode ser negativo.')
    if tipo_desconto == 'percentage':
        if desconto_dec > 100:
            raise ValueError('O desconto percentual não pode passar de 100%.')
        desconto_aplicado = _dinheiro(subtotal * desconto_dec / Decimal('100'))
    else:
        desconto_aplicado = _dinheiro(desconto_dec)
    desconto_aplicado = min(desconto_aplicado, subtotal)

    frete_dec = _dinheiro(frete)
    impostos_dec = _dinheiro(impostos)
    if frete_dec < 0 or impostos_dec < 0:
        raise ValueError('Frete e impostos não podem ser negativos.')

    return {
        'subtotal': subtotal,
        'desconto_aplicado': desconto_aplicado,
        'frete': frete_dec,
        'impostos': impostos_dec,
        'total': subtotal - desconto_aplicado + frete_dec + impostos_dec,
        'custo_material': custo_material,
    }


def _data_efetiva(orcamento):
    return _como_data(orcamento.updated_at or orcamento.created_at)


def receita_do_mes(orcamentos, referencia: date) -> dict:
    """Receita e quantidade de orçamentos aprovados no mês de `referencia`."""
    referencia = _como_data(referencia)
    total = ZERO
    quantidade = 0
    for orcamento in orcamentos:
        if orcamento.status != 'approved':
            continue
        data_orcamento = _data_efetiva(orcamento)
        if data_orcamento.year == referencia.year and data_orcamento.month == referencia.month:
            total += _dinheiro(orcamento.total_amount)
            quantidade += 1
    return {'total': total, 'quantidade': quantidade}


def vendas_por_mes(orcamentos, meses: int, referencia: date) -> list[tuple[str, Decimal]]:
    """Totais aprovados dos últimos `meses` meses, em ordem cronológica."""
    referencia = _como_data(referencia)
    totais: dict[tuple[int, int], Decimal] = {}
    for orcamento in orcamentos:
        if orcamento.status != 'approved':
            continue
        data_orcamento = _data_efetiva(orcamento)
        chave = (data_orcamento.year, data_orcamento.month)
        totais[chave] = totais.get(chave, ZERO) + _dinheiro(orcamento.total_amount)

    serie = []
    ano, mes = referencia.year, referencia.month
    for _ in range(max(1, int(meses))):
        serie.append((f'{MESES_ABREVIADOS[mes - 1]}/{str(ano)[2:]}', totais.get((ano, mes), ZERO)))
        mes -= 1
        if mes == 0:
            ano, mes = ano - 1, 12
    serie.reverse()
    return serie


def _percentual(parte: Decimal, todo: Decimal) -> Decimal:
    if todo <= 0:
        return ZERO
    return (parte / todo * Decimal('100')).quantize(Decimal('0.1'), rounding=ROUND_HALF_UP)


def resumo_custos(orcamentos_aprovados, custos_fixos, custos_variaveis) -> dict:
    """Receita, custos e margem agregados para o controle de custos."""
    orcamentos_aprovados = list(orcamentos_aprovados)
    receita = sum((_dinheiro(o.total_amount) for o in orcamentos_aprovados), ZERO)
    custo_material = sum((_dinheiro(o.material_cost_internal) for o in orcamentos_aprovados), ZERO)
    total_fixos = sum((_dinheiro(c.amount) for c in custos_fixos), ZERO)
    total_variaveis = sum((_dinheiro(c.amount) for c in custos_variaveis), ZERO)

    custo_total = custo_material + total_fixos + total_variaveis
    lucro = receita - custo_total
    quantidade = len(orcamentos_aprovados)

    return {
        'receita_total': receita,
        'quantidade_aprovados': quantidade,
        'custo_material': custo_material,
        'custos_fixos': total_fixos,
        'custos_variaveis': total_variaveis,
        'custo_total': custo_total,
        'lucro_total': lucro,
        'margem_media': _percentual(lucro, receita) if receita > 0 else ZERO,
        'percentual_material': _percentual(custo_material, custo_total),
        'percentual_fixos': _percentual(total_fixos, custo_total),
        'percentual_variaveis': _percentual(total_variaveis, custo_total),
        'custo_medio_por_projeto': _dinheiro(custo_total / quantidade) if quantidade else ZERO,
    }


def status_agregado_boleto(parcelas, hoje: date) -> dict:
    """Resume o estado de um boleto a partir das parcelas.

    Retorna `{'texto', 'chave'}` com chave em quitado, vencido, proximo,
    pendente ou sem_parcelas.
    """
    parcelas = list(parcelas)
    if not parcelas:
        return {'texto': 'Sem parcelas', 'chave': 'sem_parcelas'}

    if all(parcela.status in STATUS_PARCELA_QUITADA for parcela in parcelas):
        return {'texto': 'Quitado', 'chave': 'quitado'}

    hoje = _como_data(hoje)
    tem_vencida = False
    proximo_vencimento = None
    for parcela in parcelas:
        if parcela.status == 'vencido':
            tem_vencida = True
        elif parcela.status == 'pendente' and parcela.due_date:
            vencimento = _como_data(parcela.due_date)
            if vencimento < hoje:
                tem_vencida = True
            elif proximo_vencimento is None or vencimento < proximo_vencimento:
                proximo_vencimento = vencimento

    if tem_vencida:
        return {'texto': 'Vencido', 'chave': 'vencido'}
    if proximo_vencimento:
        return {'texto': f'Próx: {proximo_vencimento:%d/%m/%y}', 'chave': 'proximo'}
    return {'texto': 'Pendente', 'chave': 'pendente'}
