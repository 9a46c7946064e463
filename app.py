from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from functools import wraps
import os
import re

import click
from flask import (
    Blueprint,
    Flask,
    current_app,
    flash,
    make_response,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from flask.cli import with_appcontext
from flask_mail import Mail, Message
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException, NotFound
from werkzeug.security import check_password_hash, generate_password_hash

from crud import (
    BoletoDTO,
    BudgetDTO,
    BudgetItemDTO,
    ClientDTO,
    CostDTO,
    EmployeeDTO,
    GenericCrudService,
    ProductDTO,
)
from models import (
    AuditLog,
    Boleto,
    BoletoParcela,
    Budget,
    BudgetItem,
    BUDGET_STATUSES,
    BUDGET_STATUS_LABELS,
    Client,
    COST_CATEGORIES,
    DISCOUNT_TYPES,
    DISCOUNT_TYPE_LABELS,
    Employee,
    FixedCost,
    PARCELA_STATUSES,
    PARCELA_STATUS_LABELS,
    Product,
    PRODUCT_CATEGORIES,
    User,
    VariableCost,
    db,
)
from services.boleto_service import (
    FILTROS_BOLETO,
    alterar_status_parcela,
    filtrar_boletos,
    marcar_parcelas_vencidas,
    montar_parcelas,
)
from services.orcamento_service import (
    aplicar_orcamento,
    filtrar_orcamentos,
    filtrar_relatorio,
    sincronizar_budget_ids,
    totais_relatorio,
)
from services.pdf_service import gerar_pdf
from utils.financeiro import (
    calcular_encargos_folha,
    calcular_margem_lucro,
    calcular_salario_liquido,
    dias_uteis_no_mes,
    gerar_parcelas,
    receita_do_mes,
    resumo_custos,
    status_agregado_boleto,
    vendas_por_mes,
)

mail = Mail()
bp = Blueprint('painel', __name__)

client_service = GenericCrudService(model=Client, db=db)
product_service = GenericCrudService(model=Product, db=db)
budget_service = GenericCrudService(model=Budget, db=db)
employee_service = GenericCrudService(model=Employee, db=db)
fixed_cost_service = GenericCrudService(model=FixedCost, db=db)
variable_cost_service = GenericCrudService(model=VariableCost, db=db)
boleto_service = GenericCrudService(model=Boleto, db=db)

DASHBOARD_RANGES = [(1, 'Último mês'), (3, 'Últimos 3 meses'), (6, 'Últimos 6 meses'), (12, 'Últimos 12 meses')]


def create_app(test_config=None):
    """Monta a aplicação com banco, e-mail, rotas e tratadores de erro."""
    app = Flask(__name__)
    app.config['SQLALCHEMY_DATABASE_URI'] = os.getenv('DATABASE_URL', 'sqlite:///gestao.db')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-change-me')
    app.config['SECURITY_PASSWORD_SALT'] = os.getenv('SECURITY_PASSWORD_SALT', 'gestao-reset-salt')
    app.config['SESSION_DURATION_HOURS'] = int(os.getenv('SESSION_DURATION_HOURS', '24'))
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
    app.config['MAIL_SERVER'] = os.getenv('MAIL_SERVER', 'smtp.gmail.com')
    app.config['MAIL_PORT'] = int(os.getenv('MAIL_PORT', '587'))
    app.config['MAIL_USE_TLS'] = os.getenv('MAIL_USE_TLS', 'true').lower() == 'true'
    app.config['MAIL_USERNAME'] = os.getenv('MAIL_USERNAME', '')
    app.config['MAIL_PASSWORD'] = os.getenv('MAIL_PASSWORD', '')
    app.config['MAIL_DEFAULT_SENDER'] = os.getenv('MAIL_DEFAULT_SENDER', os.getenv('MAIL_USERNAME', ''))
    app.config['VALE_REFEICAO_DIARIO'] = Decimal(os.getenv('VALE_REFEICAO_DIARIO', '15.00'))
    app.config['VALE_TRANSPORTE_DIARIO'] = Decimal(os.getenv('VALE_TRANSPORTE_DIARIO', '10.00'))
    app.config['DEFAULT_ADMIN_EMAIL'] = os.getenv('DEFAULT_ADMIN_EMAIL', 'admin@gestao.local')
    app.config['DEFAULT_ADMIN_PASSWORD'] = os.getenv('DEFAULT_ADMIN_PASSWORD', 'admin123')
    app.config['COMPANY_NAME'] = os.getenv('COMPANY_NAME', 'GVM Serviços')
    if test_config:
        app.config.update(test_config)

    db.init_app(app)
    mail.init_app(app)
    app.register_blueprint(bp)

    app.register_error_handler(ValueError, handle_value_error)
    app.register_error_handler(404, handle_not_found)
    app.register_error_handler(SQLAlchemyError, handle_database_error)
    app.register_error_handler(Exception, handle_generic_error)

    app.add_template_filter(_format_brl, 'brl')
    app.add_template_filter(_format_date, 'data')
    app.context_processor(inject_base_context)
    app.cli.add_command(init_db_command)

    with app.app_context():
        _init_database()

    return app


def _init_database():
    """Cria as tabelas e o usuário administrador padrão quando não há usuários."""
    db.create_all()
    if User.query.count() == 0:
        admin_email = current_app.config['DEFAULT_ADMIN_EMAIL'].strip().lower()
        admin_password = current_app.config['DEFAULT_ADMIN_PASSWORD']
        db.session.add(User(name='Administrador', email=admin_email, password_hash=generate_password_hash(admin_password)))
        db.session.commit()
        current_app.logger.info('Usuário administrador padrão criado: %s', admin_email)


@click.command('init-db')
@with_appcontext
def init_db_command():
    """Cria as tabelas do banco e o administrador padrão."""
    _init_database()
    click.echo('Banco de dados inicializado.')


def handle_value_error(exc):
    db.session.rollback()
    flash(str(exc), 'danger')
    return redirect(request.referrer or url_for('painel.dashboard'))


def handle_not_found(exc):
    """Página dedicada para registros inexistentes, separada das falhas de acesso ao banco."""
    message = exc.description if exc.description != NotFound.description else 'Registro não encontrado.'
    return render_template('not_found.html', message=message), 404


def handle_database_error(exc):
    db.session.rollback()
    current_app.logger.exception('Falha ao acessar o banco de dados: %s', exc)
    flash('Falha ao salvar os dados. Tente novamente.', 'danger')
    return redirect(request.referrer or url_for('painel.dashboard'))


def handle_generic_error(exc):
    """Função `handle_generic_error`: captura erros inesperados,
    registra detalhes para análise e informa o usuário de forma genérica,
    evitando exposição de informações sensíveis."""
    if isinstance(exc, HTTPException):
        return exc

    db.session.rollback()
    current_app.logger.exception('Erro inesperado: %s', exc)
    flash('Ocorreu um erro inesperado. Tente novamente.', 'danger')
    return redirect(request.referrer or url_for('painel.dashboard'))


def _format_brl(value):
    amount = Decimal(value or 0).quantize(Decimal('0.01'))
    formatted = f'{amount:,.2f}'.replace(',', '_').replace('.', ',').replace('_', '.')
    return f'R$ {formatted}'


def _format_date(value, fmt='%d/%m/%Y'):
    if not value:
        return '-'
    return value.strftime(fmt)


def inject_base_context():
    """Injeta nome da empresa, usuário logado e rótulos em todos os templates."""
    return {
        'company_name': current_app.config['COMPANY_NAME'],
        'user_name': session.get('user_name'),
        'budget_status_labels': BUDGET_STATUS_LABELS,
        'parcela_status_labels': PARCELA_STATUS_LABELS,
    }


def _today() -> date:
    return datetime.utcnow().date()


def _session_expired() -> bool:
    """Sessões valem por SESSION_DURATION_HOURS a partir do login."""
    try:
        login_at = datetime.fromisoformat(session.get('login_at') or '')
    except (TypeError, ValueError):
        return True
    limit = timedelta(hours=current_app.config['SESSION_DURATION_HOURS'])
    return datetime.utcnow() - login_at > limit


def _login_required(view):
    """Função `_login_required`: decorador que exige sessão válida e não expirada, redirecionando para o login caso contrário."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not session.get('user_id'):
            flash('Faça login para continuar.', 'danger')
            return redirect(url_for('painel.login'))
        if _session_expired():
            current_app.logger.info('Sessão expirada para o usuário %s', session.get('user_id'))
            session.clear()
            flash('Sessão expirada. Faça login novamente.', 'danger')
            return redirect(url_for('painel.login'))
        return view(*args, **kwargs)
    return wrapped


def _current_user():
    uid = session.get('user_id')
    if not uid:
        return None
    return db.session.get(User, uid)


def _build_reset_token(email: str):
    serializer = URLSafeTimedSerializer(current_app.config['SECRET_KEY'])
    return serializer.dumps(email, salt=current_app.config['SECURITY_PASSWORD_SALT'])


def _read_reset_token(token: str, max_age_seconds: int = 3600):
    serializer = URLSafeTimedSerializer(current_app.config['SECRET_KEY'])
    return serializer.loads(token, salt=current_app.config['SECURITY_PASSWORD_SALT'], max_age=max_age_seconds)


def _log_audit(action: str, details: str):
    """Função `_log_audit`: registra uma ação de auditoria no banco de dados."""
    user = _current_user()
    db.session.add(AuditLog(user_name=user.name if user else 'Sistema', action=action, details=details))


MONEY_BR_RE = re.compile(r'^-?(\d{1,3}(\.\d{3})+|\d+),\d{1,2}$')
MONEY_THOUSANDS_RE = re.compile(r'^-?\d{1,3}(\.\d{3})+$')
MONEY_PLAIN_RE = re.compile(r'^-?\d+(\.\d{1,2})?$')


def _parse_money(value, field_label: str) -> Decimal:
    """Normaliza entradas monetárias para Decimal com 2 casas.

    Aceita 1.234,56 / 1234,56 / 1.234 (ponto de milhar) / 1234.56. Formas
    mistas ou ambíguas, como 1,000.50 ou 1.2345, são rejeitadas.
    """
    raw = str(value if value is not None else '').replace('R$', '').replace(' ', '').strip()
    if not raw:
        return Decimal('0.00')
    if MONEY_BR_RE.match(raw) or MONEY_THOUSANDS_RE.match(raw):
        raw = raw.replace('.', '').replace(',', '.')
    elif not MONEY_PLAIN_RE.match(raw):
        raise ValueError(f'Valor inválido para {field_label}.')
    try:
        parsed = Decimal(raw)
    except InvalidOperation:
        raise ValueError(f'Valor inválido para {field_label}.')
    return parsed.quantize(Decimal('0.01'))


def _parse_int(value, field_label: str, default: int = 0) -> int:
    raw = str(value if value is not None else '').strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f'Número inválido para {field_label}.')


def _parse_date_input(value: str | None, field_label: str = 'data'):
    raw = (value or '').strip()
    if not raw:
        return None
    for fmt in ('%Y-%m-%d', '%d/%m/%Y'):
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    raise ValueError(f'Data inválida para {field_label}. Use o formato AAAA-MM-DD.')


def _pdf_response(html: str, filename: str):
    """Devolve o PDF gerado ou, se o xhtml2pdf falhar, a versão HTML para impressão."""
    if request.args.get('preview') == '1':
        return html

    pdf = gerar_pdf(html, current_app.root_path)
    if pdf is None:
        current_app.logger.warning('Falha ao gerar PDF %s', filename)
        flash('Não foi possível gerar PDF. Exibindo versão HTML para impressão.', 'danger')
        return html

    response = make_response(pdf)
    response.headers['Content-Type'] = 'application/pdf'
    response.headers['Content-Disposition'] = f'inline; filename="{filename}"'
    return response


# --- Autenticação ---

@bp.route('/login', methods=['GET', 'POST'])
def login():
    """Autentica por e-mail e senha e marca o horário do login na sessão."""
    if request.method == 'POST':
        email = (request.form.get('email') or '').strip().lower()
        password = request.form.get('password') or ''

        if not email or not password:
            flash('Preencha e-mail e senha para continuar.', 'danger')
            return redirect(url_for('painel.login'))

        user = User.query.filter_by(email=email).first()
        if not user or not check_password_hash(user.password_hash, password):
            current_app.logger.info('Falha de login para %s', email)
            flash('E-mail ou senha incorretos. Verifique os dados e tente novamente.', 'danger')
            return redirect(url_for('painel.login'))

        session.clear()
        session['user_id'] = user.id
        session['user_name'] = user.name
        session['login_at'] = datetime.utcnow().isoformat()
        flash('Login realizado com sucesso!', 'success')
        return redirect(url_for('painel.dashboard'))

    if session.get('user_id') and not _session_expired():
        return redirect(url_for('painel.dashboard'))
    return render_template('login.html')


@bp.route('/logout')
def logout():
    session.clear()
    flash('Sessão encerrada.', 'success')
    return redirect(url_for('painel.login'))


@bp.route('/recuperar-senha', methods=['GET', 'POST'])
def recuperar_senha():
    """Envia por e-mail um link assinado para redefinição de senha."""
    if request.method == 'POST':
        email = (request.form.get('email') or '').strip().lower()
        user = User.query.filter_by(email=email).first()
        if user:
            token = _build_reset_token(user.email)
            reset_url = url_for('painel.redefinir_senha', token=token, _external=True)
            msg = Message(f'Recuperação de senha - {current_app.config["COMPANY_NAME"]}', recipients=[user.email])
            msg.body = f'Olá, {user.name}! Use o link para redefinir sua senha: {reset_url}'
            try:
                mail.send(msg)
            except Exception as exc:
                current_app.logger.exception('Falha ao enviar e-mail de recuperação: %s', exc)
                flash('Não foi possível enviar o e-mail. Verifique as configurações de SMTP do servidor.', 'danger')
                return redirect(url_for('painel.recuperar_senha'))
        flash('Se o e-mail existir, enviaremos as instruções.', 'success')
        return redirect(url_for('painel.recuperar_senha'))

    return render_template('recover_password.html')


@bp.route('/redefinir-senha/<token>', methods=['GET', 'POST'])
def redefinir_senha(token: str):
    try:
        email = _read_reset_token(token)
    except (SignatureExpired, BadSignature):
        flash('Link inválido ou expirado.', 'danger')
        return redirect(url_for('painel.recuperar_senha'))

    user = User.query.filter_by(email=email).first_or_404()
    if request.method == 'POST':
        password = request.form.get('password') or ''
        if len(password) < 6:
            flash('A nova senha deve ter ao menos 6 caracteres.', 'danger')
            return redirect(url_for('painel.redefinir_senha', token=token))
        user.password_hash = generate_password_hash(password)
        db.session.commit()
        flash('Senha redefinida com sucesso. Faça login.', 'success')
        return redirect(url_for('painel.login'))

    return render_template('reset_password.html', token=token)


# --- Dashboard ---

@bp.route('/')
@_login_required
def dashboard():
    """Indicadores de orçamentos, receita do mês e vendas mensais aprovadas."""
    months = request.args.get('range', 6, type=int)
    if months not in dict(DASHBOARD_RANGES):
        months = 6

    today = _today()
    budgets = budget_service.get_all(Budget.created_at.desc())
    revenue = receita_do_mes(budgets, today)
    sales_chart = vendas_por_mes(budgets, months, today)

    return render_template(
        'dashboard.html',
        total_budgets=len(budgets),
        approved_count=sum(1 for b in budgets if b.status == 'approved'),
        pending_count=sum(1 for b in budgets if b.status in ('draft', 'sent')),
        monthly_revenue=revenue['total'],
        monthly_approved=revenue['quantidade'],
        recent_budgets=budgets[:5],
        chart_labels=[label for label, _ in sales_chart],
        chart_totals=[float(total) for _, total in sales_chart],
        sales_chart=sales_chart,
        ranges=DASHBOARD_RANGES,
        selected_range=months,
    )


# --- Clientes ---

def _client_dto_from_form(form) -> ClientDTO:
    dto = ClientDTO(
        name=(form.get('name') or '').strip(),
        company_name=(form.get('company_name') or '').strip() or None,
        document=(form.get('document') or '').strip(),
        address=(form.get('address') or '').strip(),
        email=(form.get('email') or '').strip().lower(),
        phone=(form.get('phone') or '').strip(),
    )
    dto.validate()
    return dto


@bp.route('/clientes')
@_login_required
def clientes():
    term = (request.args.get('q') or '').strip().lower()
    items = client_service.get_all(db.func.lower(Client.name))
    if term:
        items = [
            c for c in items
            if term in c.name.lower()
            or term in (c.company_name or '').lower()
            or term in c.email.lower()
            or term in c.document
        ]
    return render_template('clients/list.html', clients=items, term=term)


@bp.route('/clientes/novo', methods=['GET', 'POST'])
@_login_required
def novo_cliente():
    if request.method == 'POST':
        dto = _client_dto_from_form(request.form)
        client = client_service.create(**vars(dto))
        db.session.flush()
        _log_audit('Cliente cadastrado', f'{client.name} (#{client.id})')
        db.session.commit()
        flash(f'O cliente {client.name} foi salvo com sucesso.', 'success')
        return redirect(url_for('painel.clientes'))
    return render_template('clients/form.html', client=None)


@bp.route('/clientes/<int:client_id>')
@_login_required
def detalhe_cliente(client_id: int):
    client = client_service.get_or_404(client_id, description='Cliente não encontrado.')
    budgets = Budget.query.filter(Budget.id.in_(client.budget_ids)).order_by(Budget.created_at.desc()).all() if client.budget_ids else []
    boletos = Boleto.query.filter_by(client_id=client.id).order_by(Boleto.created_at.desc()).all()
    return render_template('clients/detail.html', client=client, budgets=budgets, boletos=boletos)


@bp.route('/clientes/<int:client_id>/editar', methods=['GET', 'POST'])
@_login_required
def editar_cliente(client_id: int):
    client = client_service.get_or_404(client_id, description='Cliente não encontrado.')
    if request.method == 'POST':
        dto = _client_dto_from_form(request.form)
        client_service.update(client, **vars(dto))
        Budget.query.filter_by(client_id=client.id).update({'client_name': client.name})
        Boleto.query.filter_by(client_id=client.id).update({'client_name': client.name})
        _log_audit('Cliente atualizado', f'{client.name} (#{client.id})')
        db.session.commit()
        flash(f'O cliente {client.name} foi atualizado com sucesso.', 'success')
        return redirect(url_for('painel.detalhe_cliente', client_id=client.id))
    return render_template('clients/form.html', client=client)


@bp.route('/clientes/<int:client_id>/excluir', methods=['POST'])
@_login_required
def excluir_cliente(client_id: int):
    client = client_service.get_or_404(client_id, description='Cliente não encontrado.')
    if Budget.query.filter_by(client_id=client.id).first() or Boleto.query.filter_by(client_id=client.id).first():
        flash('Não é possível excluir cliente com orçamentos ou boletos vinculados.', 'danger')
        return redirect(url_for('painel.clientes'))

    name = client.name
    client_service.delete(client)
    _log_audit('Cliente excluído', f'{name} (#{client_id})')
    db.session.commit()
    flash(f'O cliente "{name}" foi excluído.', 'success')
    return redirect(url_for('painel.clientes'))


# --- Produtos ---

def _product_dto_from_form(form) -> ProductDTO:
    dto = ProductDTO(
        name=(form.get('name') or '').strip(),
        description=(form.get('description') or '').strip() or None,
        sale_price=_parse_money(form.get('sale_price'), 'preço de venda'),
        cost_price=_parse_money(form.get('cost_price'), 'preço de custo'),
        category=(form.get('category') or '').strip(),
    )
    dto.validate()
    return dto


@bp.route('/produtos')
@_login_required
def produtos():
    term = (request.args.get('q') or '').strip().lower()
    category = request.args.get('category') or 'all'
    query = Product.query
    if category != 'all':
        query = query.filter_by(category=category)
    items = query.order_by(db.func.lower(Product.name)).all()
    if term:
        items = [p for p in items if term in p.name.lower() or term in (p.description or '').lower()]
    return render_template('products/list.html', products=items, term=term, category=category, categories=PRODUCT_CATEGORIES)


@bp.route('/produtos/novo', methods=['GET', 'POST'])
@_login_required
def novo_produto():
    if request.method == 'POST':
        dto = _product_dto_from_form(request.form)
        product = product_service.create(**vars(dto))
        db.session.flush()
        _log_audit('Produto cadastrado', f'{product.name} (#{product.id})')
        db.session.commit()
        flash(f'O produto {product.name} foi salvo com sucesso.', 'success')
        return redirect(url_for('painel.produtos'))
    return render_template('products/form.html', product=None, categories=PRODUCT_CATEGORIES)


@bp.route('/produtos/<int:product_id>')
@_login_required
def detalhe_produto(product_id: int):
    product = product_service.get_or_404(product_id, description='Produto não encontrado.')
    margin = calcular_margem_lucro(product.cost_price, product.sale_price)
    return render_template('products/detail.html', product=product, margin=margin)


@bp.route('/produtos/<int:product_id>/editar', methods=['GET', 'POST'])
@_login_required
def editar_produto(product_id: int):
    product = product_service.get_or_404(product_id, description='Produto não encontrado.')
    if request.method == 'POST':
        dto = _product_dto_from_form(request.form)
        product_service.update(product, **vars(dto))
        _log_audit('Produto atualizado', f'{product.name} (#{product.id})')
        db.session.commit()
        flash(f'O produto {product.name} foi atualizado com sucesso.', 'success')
        return redirect(url_for('painel.detalhe_produto', product_id=product.id))
    return render_template('products/form.html', product=product, categories=PRODUCT_CATEGORIES)


@bp.route('/produtos/<int:product_id>/excluir', methods=['POST'])
@_login_required
def excluir_produto(product_id: int):
    product = product_service.get_or_404(product_id, description='Produto não encontrado.')
    name = product.name
    BudgetItem.query.filter_by(product_id=product.id).update({'product_id': None})
    product_service.delete(product)
    _log_audit('Produto excluído', f'{name} (#{product_id})')
    db.session.commit()
    flash(f'O produto "{name}" foi excluído.', 'success')
    return redirect(url_for('painel.produtos'))


# --- Orçamentos ---

def _budget_dto_from_form(form) -> BudgetDTO:
    """Monta o DTO a partir das linhas `item_product_id[]`/`item_quantity[]`; linhas sem produto são ignoradas.

    Linhas gravadas cujo produto foi excluído chegam como `snapshot-<id do item>`.
    """
    items = []
    for raw_product_id, raw_quantity in zip(form.getlist('item_product_id[]'), form.getlist('item_quantity[]')):
        raw_product_id = (raw_product_id or '').strip()
        if not raw_product_id:
            continue
        quantity = _parse_int(raw_quantity, 'quantidade', default=1)
        if raw_product_id.startswith('snapshot-'):
            items.append(BudgetItemDTO(
                product_id=None,
                quantity=quantity,
                snapshot_item_id=_parse_int(raw_product_id.removeprefix('snapshot-'), 'item do orçamento'),
            ))
            continue
        items.append(BudgetItemDTO(product_id=_parse_int(raw_product_id, 'produto'), quantity=quantity))

    dto = BudgetDTO(
        client_id=_parse_int(form.get('client_id'), 'cliente') or None,
        items=items,
        status=(form.get('status') or 'draft').strip(),
        discount_type=(form.get('discount_type') or 'fixed').strip(),
        discount_input=_parse_money(form.get('discount_input'), 'desconto'),
        shipping_cost=_parse_money(form.get('shipping_cost'), 'frete'),
        tax_amount=_parse_money(form.get('tax_amount'), 'impostos'),
        delivery_time=form.get('delivery_time'),
        payment_method=form.get('payment_method'),
    )
    dto.validate()
    return dto


def _save_budget_from_form(budget: Budget, form) -> Budget:
    dto = _budget_dto_from_form(form)
    client = client_service.get_by_id(dto.client_id)
    if client is None:
        raise ValueError('Cliente não encontrado.')
    products = {p.id: p for p in Product.query.filter(Product.id.in_([i.product_id for i in dto.items if i.product_id])).all()}

    previous_client_id = budget.client_id
    aplicar_orcamento(budget, dto, client, products)
    if budget.id is None:
        db.session.add(budget)
    db.session.flush()
    sincronizar_budget_ids(budget, cliente_anterior_id=previous_client_id)
    return budget


def _budget_form_context(budget=None):
    return {
        'budget': budget,
        'clients': client_service.get_all(db.func.lower(Client.name)),
        'products': product_service.get_all(db.func.lower(Product.name)),
        'statuses': BUDGET_STATUSES,
        'discount_types': DISCOUNT_TYPES,
        'blank_rows': 3,
    }


@bp.route('/orcamentos')
@_login_required
def orcamentos():
    term = request.args.get('q') or ''
    status = request.args.get('status') or 'all'
    items = filtrar_orcamentos(budget_service.get_all(Budget.created_at.desc()), term, status)
    return render_template('budgets/list.html', budgets=items, term=term, status=status, statuses=BUDGET_STATUSES)


@bp.route('/orcamentos/novo', methods=['GET', 'POST'])
@_login_required
def novo_orcamento():
    if request.method == 'POST':
        budget = _save_budget_from_form(Budget(), request.form)
        _log_audit('Orçamento criado', f'#{budget.id} para {budget.client_name} - {_format_brl(budget.total_amount)}')
        db.session.commit()
        flash(f'O orçamento para {budget.client_name} foi salvo com sucesso.', 'success')
        return redirect(url_for('painel.detalhe_orcamento', budget_id=budget.id))
    return render_template('budgets/form.html', **_budget_form_context())


@bp.route('/orcamentos/<int:budget_id>')
@_login_required
def detalhe_orcamento(budget_id: int):
    budget = budget_service.get_or_404(budget_id, description='Orçamento não encontrado.')
    return render_template('budgets/detail.html', budget=budget, discount_type_labels=DISCOUNT_TYPE_LABELS)


@bp.route('/orcamentos/<int:budget_id>/editar', methods=['GET', 'POST'])
@_login_required
def editar_orcamento(budget_id: int):
    budget = budget_service.get_or_404(budget_id, description='Orçamento não encontrado.')
    if request.method == 'POST':
        _save_budget_from_form(budget, request.form)
        _log_audit('Orçamento atualizado', f'#{budget.id} ({budget.status_label})')
        db.session.commit()
        flash(f'O orçamento para {budget.client_name} foi atualizado com sucesso.', 'success')
        return redirect(url_for('painel.detalhe_orcamento', budget_id=budget.id))
    return render_template('budgets/form.html', **_budget_form_context(budget))


@bp.route('/orcamentos/<int:budget_id>/excluir', methods=['POST'])
@_login_required
def excluir_orcamento(budget_id: int):
    budget = budget_service.get_or_404(budget_id, description='Orçamento não encontrado.')
    sincronizar_budget_ids(budget, removido=True)
    client_name = budget.client_name
    budget_service.delete(budget)
    _log_audit('Orçamento excluído', f'#{budget_id} de {client_name}')
    db.session.commit()
    flash(f'O orçamento #{budget_id} foi excluído.', 'success')
    return redirect(url_for('painel.orcamentos'))


@bp.route('/orcamentos/<int:budget_id>/pdf')
@_login_required
def pdf_orcamento(budget_id: int):
    budget = budget_service.get_or_404(budget_id, description='Orçamento não encontrado.')
    html = render_template(
        'print/budget.html',
        budget=budget,
        client=budget.client,
        discount_type_labels=DISCOUNT_TYPE_LABELS,
        generated_at=datetime.utcnow(),
    )
    return _pdf_response(html, f'orcamento-{budget.id}.pdf')


# --- Funcionários ---

def _employee_dto_from_form(form) -> EmployeeDTO:
    dto = EmployeeDTO(
        name=(form.get('name') or '').strip(),
        position=(form.get('position') or '').strip(),
        salary=_parse_money(form.get('salary'), 'salário'),
        admission_date=_parse_date_input(form.get('admission_date'), 'data de admissão'),
        meal_voucher=form.get('meal_voucher') == 'on',
        transport_voucher=form.get('transport_voucher') == 'on',
    )
    dto.validate()
    return dto


def _payroll_estimate(employee: Employee, reference: date) -> dict:
    business_days = dias_uteis_no_mes(reference)
    charges = calcular_encargos_folha(
        employee.salary,
        employee.meal_voucher,
        employee.transport_voucher,
        business_days,
        valor_diario_refeicao=current_app.config['VALE_REFEICAO_DIARIO'],
        valor_diario_transporte=current_app.config['VALE_TRANSPORTE_DIARIO'],
    )
    net = calcular_salario_liquido(employee.salary, employee.transport_voucher)
    return {'encargos': charges, 'liquido': net}


@bp.route('/funcionarios')
@_login_required
def funcionarios():
    term = (request.args.get('q') or '').strip().lower()
    items = employee_service.get_all(db.func.lower(Employee.name))
    if term:
        items = [e for e in items if term in e.name.lower() or term in e.position.lower()]
    return render_template('employees/list.html', employees=items, term=term)


@bp.route('/funcionarios/novo', methods=['GET', 'POST'])
@_login_required
def novo_funcionario():
    if request.method == 'POST':
        dto = _employee_dto_from_form(request.form)
        employee = employee_service.create(**vars(dto))
        db.session.flush()
        _log_audit('Funcionário cadastrado', f'{employee.name} (#{employee.id})')
        db.session.commit()
        flash(f'O funcionário {employee.name} foi salvo com sucesso.', 'success')
        return redirect(url_for('painel.funcionarios'))
    return render_template('employees/form.html', employee=None)


@bp.route('/funcionarios/<int:employee_id>')
@_login_required
def detalhe_funcionario(employee_id: int):
    employee = employee_service.get_or_404(employee_id, description='Funcionário não encontrado.')
    reference = _today()
    return render_template(
        'employees/detail.html',
        employee=employee,
        estimate=_payroll_estimate(employee, reference),
        reference=reference,
    )


@bp.route('/funcionarios/<int:employee_id>/editar', methods=['GET', 'POST'])
@_login_required
def editar_funcionario(employee_id: int):
    employee = employee_service.get_or_404(employee_id, description='Funcionário não encontrado.')
    if request.method == 'POST':
        dto = _employee_dto_from_form(request.form)
        employee_service.update(employee, **vars(dto))
        VariableCost.query.filter_by(employee_id=employee.id).update({'employee_name': employee.name})
        _log_audit('Funcionário atualizado', f'{employee.name} (#{employee.id})')
        db.session.commit()
        flash(f'O funcionário {employee.name} foi atualizado com sucesso.', 'success')
        return redirect(url_for('painel.detalhe_funcionario', employee_id=employee.id))
    return render_template('employees/form.html', employee=employee)


@bp.route('/funcionarios/<int:employee_id>/excluir', methods=['POST'])
@_login_required
def excluir_funcionario(employee_id: int):
    employee = employee_service.get_or_404(employee_id, description='Funcionário não encontrado.')
    name = employee.name
    VariableCost.query.filter_by(employee_id=employee.id).update({'employee_id': None})
    employee_service.delete(employee)
    _log_audit('Funcionário excluído', f'{name} (#{employee_id})')
    db.session.commit()
    flash(f'O funcionário "{name}" foi excluído.', 'success')
    return redirect(url_for('painel.funcionarios'))


# --- Controle de custos ---

def _cost_dto_from_form(form, variable: bool) -> CostDTO:
    dto = CostDTO(
        description=(form.get('description') or '').strip(),
        amount=_parse_money(form.get('amount'), 'valor do custo'),
        category=(form.get('category') or '').strip(),
        cost_date=_parse_date_input(form.get('date'), 'data do custo') if variable else None,
        variable=variable,
    )
    dto.validate()
    return dto


@bp.route('/controle-custos')
@_login_required
def controle_custos():
    """Receita, custos por categoria e margem dos orçamentos aprovados."""
    approved = Budget.query.filter_by(status='approved').all()
    fixed_costs = fixed_cost_service.get_all(FixedCost.created_at.desc())
    variable_costs = variable_cost_service.get_all(VariableCost.date.desc())
    summary = resumo_custos(approved, fixed_costs, variable_costs)

    reference = _today()
    employees = employee_service.get_all(db.func.lower(Employee.name))
    payroll_total = sum(
        (_payroll_estimate(e, reference)['encargos']['custo_total_mensal'] for e in employees),
        Decimal('0.00'),
    )

    return render_template(
        'costs/control.html',
        summary=summary,
        fixed_costs=fixed_costs,
        variable_costs=variable_costs,
        employees=employees,
        payroll_total=payroll_total,
        categories=COST_CATEGORIES,
        today=reference,
    )


@bp.route('/controle-custos/fixos', methods=['POST'])
@_login_required
def cadastrar_custo_fixo():
    dto = _cost_dto_from_form(request.form, variable=False)
    cost = fixed_cost_service.create(description=dto.description, amount=dto.amount, category=dto.category)
    db.session.flush()
    _log_audit('Custo fixo cadastrado', f'{cost.description} - {_format_brl(cost.amount)}')
    db.session.commit()
    flash('Custo fixo adicionado!', 'success')
    return redirect(url_for('painel.controle_custos'))


@bp.route('/controle-custos/fixos/<int:cost_id>/excluir', methods=['POST'])
@_login_required
def excluir_custo_fixo(cost_id: int):
    cost = fixed_cost_service.get_or_404(cost_id, description='Custo fixo não encontrado.')
    fixed_cost_service.delete(cost)
    _log_audit('Custo fixo excluído', f'{cost.description} (#{cost_id})')
    db.session.commit()
    flash('Custo fixo excluído com sucesso!', 'success')
    return redirect(url_for('painel.controle_custos'))


@bp.route('/controle-custos/variaveis', methods=['POST'])
@_login_required
def cadastrar_custo_variavel():
    dto = _cost_dto_from_form(request.form, variable=True)
    employee_id = _parse_int(request.form.get('employee_id'), 'funcionário') or None
    employee = employee_service.get_by_id(employee_id) if employee_id else None
    cost = variable_cost_service.create(
        description=dto.description,
        amount=dto.amount,
        category=dto.category,
        date=dto.cost_date,
        employee_id=employee.id if employee else None,
        employee_name=employee.name if employee else None,
    )
    db.session.flush()
    _log_audit('Custo variável cadastrado', f'{cost.description} - {_format_brl(cost.amount)}')
    db.session.commit()
    flash('Custo variável adicionado!', 'success')
    return redirect(url_for('painel.controle_custos'))


@bp.route('/controle-custos/variaveis/<int:cost_id>/excluir', methods=['POST'])
@_login_required
def excluir_custo_variavel(cost_id: int):
    cost = variable_cost_service.get_or_404(cost_id, description='Custo variável não encontrado.')
    variable_cost_service.delete(cost)
    _log_audit('Custo variável excluído', f'{cost.description} (#{cost_id})')
    db.session.commit()
    flash('Custo variável excluído com sucesso!', 'success')
    return redirect(url_for('painel.controle_custos'))


# --- Boletos ---

def _boleto_dto_from_form(form) -> BoletoDTO:
    dto = BoletoDTO(
        client_id=_parse_int(form.get('client_id'), 'cliente') or None,
        total_amount=_parse_money(form.get('total_amount'), 'valor total'),
        number_of_installments=_parse_int(form.get('number_of_installments'), 'número de parcelas', default=1),
        initial_due_date=_parse_date_input(form.get('initial_due_date'), 'vencimento da 1ª parcela'),
        observations=(form.get('observations') or '').strip() or None,
    )
    dto.validate()
    return dto


def _refresh_overdue(boletos) -> None:
    """Marca parcelas vencidas na leitura; falha ao gravar não impede a exibição."""
    today = _today()
    changed = [boleto for boleto in boletos if marcar_parcelas_vencidas(boleto, today)]
    if not changed:
        return
    try:
        for boleto in changed:
            boleto.updated_at = datetime.utcnow()
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.warning('Falha ao atualizar parcelas vencidas: %s', exc)


def _boleto_form_context(boleto=None, preview=None, form_data=None):
    """Valores do formulário: os enviados na pré-visualização, os do boleto em edição ou os padrões."""
    values = {
        'client_id': str(boleto.client_id) if boleto else '',
        'total_amount': str(boleto.total_amount) if boleto else '',
        'number_of_installments': str(boleto.number_of_installments) if boleto else '1',
        'initial_due_date': boleto.initial_due_date.isoformat() if boleto else _today().isoformat(),
        'observations': (boleto.observations or '') if boleto else '',
    }
    if form_data:
        values.update({key: form_data.get(key, '') for key in values})
    return {
        'boleto': boleto,
        'clients': client_service.get_all(db.func.lower(Client.name)),
        'preview': preview or [],
        'values': values,
    }


@bp.route('/boletos')
@_login_required
def boletos():
    term = request.args.get('q') or ''
    view_filter = request.args.get('filtro') or 'ativos'
    items = boleto_service.get_all(Boleto.created_at.desc())
    _refresh_overdue(items)
    rows = filtrar_boletos(items, term, view_filter, _today())
    return render_template('boletos/list.html', rows=rows, term=term, view_filter=view_filter, filters=FILTROS_BOLETO)


@bp.route('/boletos/novo', methods=['GET', 'POST'])
@_login_required
def novo_boleto():
    if request.method == 'POST':
        dto = _boleto_dto_from_form(request.form)
        if request.form.get('action') == 'preview':
            preview = gerar_parcelas(dto.total_amount, dto.number_of_installments, dto.initial_due_date)
            return render_template('boletos/form.html', **_boleto_form_context(preview=preview, form_data=request.form))

        client = client_service.get_by_id(dto.client_id)
        if client is None:
            raise ValueError('Cliente não encontrado.')
        boleto = boleto_service.create(
            client_id=client.id,
            client_name=client.name,
            total_amount=dto.total_amount,
            number_of_installments=dto.number_of_installments,
            initial_due_date=dto.initial_due_date,
            observations=dto.observations,
        )
        montar_parcelas(boleto)
        db.session.flush()
        _log_audit('Boleto criado', f'#{boleto.id} para {client.name} - {dto.number_of_installments}x de {_format_brl(dto.total_amount)}')
        db.session.commit()
        flash(f'{dto.number_of_installments} parcela(s) gerada(s) para {client.name}.', 'success')
        return redirect(url_for('painel.detalhe_boleto', boleto_id=boleto.id))
    return render_template('boletos/form.html', **_boleto_form_context())


@bp.route('/boletos/<int:boleto_id>')
@_login_required
def detalhe_boleto(boleto_id: int):
    boleto = boleto_service.get_or_404(boleto_id, description='Boleto não encontrado.')
    _refresh_overdue([boleto])
    return render_template(
        'boletos/detail.html',
        boleto=boleto,
        status=status_agregado_boleto(boleto.installments, _today()),
        statuses=PARCELA_STATUSES,
    )


@bp.route('/boletos/<int:boleto_id>/editar', methods=['GET', 'POST'])
@_login_required
def editar_boleto(boleto_id: int):
    boleto = boleto_service.get_or_404(boleto_id, description='Boleto não encontrado.')
    if request.method == 'POST':
        dto = _boleto_dto_from_form(request.form)
        client = client_service.get_by_id(dto.client_id)
        if client is None:
            raise ValueError('Cliente não encontrado.')

        schedule_changed = (
            Decimal(boleto.total_amount) != dto.total_amount
            or boleto.number_of_installments != dto.number_of_installments
            or boleto.initial_due_date != dto.initial_due_date
        )
        boleto_service.update(
            boleto,
            client_id=client.id,
            client_name=client.name,
            total_amount=dto.total_amount,
            number_of_installments=dto.number_of_installments,
            initial_due_date=dto.initial_due_date,
            observations=dto.observations,
        )
        if schedule_changed:
            # as parcelas antigas saem antes da nova numeração por causa do índice único
            boleto.installments.clear()
            db.session.flush()
            montar_parcelas(boleto)
        _log_audit('Boleto atualizado', f'#{boleto.id} de {client.name}')
        db.session.commit()
        if schedule_changed:
            flash('Boleto atualizado. As parcelas foram recalculadas.', 'success')
        else:
            flash('Boleto atualizado com sucesso!', 'success')
        return redirect(url_for('painel.detalhe_boleto', boleto_id=boleto.id))
    schedule = [
        {'numero': p.parcel_number, 'valor': p.value, 'vencimento': p.due_date, 'status': p.status}
        for p in boleto.installments
    ]
    return render_template('boletos/form.html', **_boleto_form_context(boleto=boleto, preview=schedule))


@bp.route('/boletos/<int:boleto_id>/excluir', methods=['POST'])
@_login_required
def excluir_boleto(boleto_id: int):
    boleto = boleto_service.get_or_404(boleto_id, description='Boleto não encontrado.')
    client_name = boleto.client_name
    boleto_service.delete(boleto)
    _log_audit('Boleto excluído', f'#{boleto_id} de {client_name}')
    db.session.commit()
    flash(f'Os boletos para "{client_name}" foram excluídos.', 'success')
    return redirect(url_for('painel.boletos'))


@bp.route('/boletos/<int:boleto_id>/parcelas/<int:parcel_number>/status', methods=['POST'])
@_login_required
def alterar_status_parcela_boleto(boleto_id: int, parcel_number: int):
    boleto = boleto_service.get_or_404(boleto_id, description='Boleto não encontrado.')
    parcela = BoletoParcela.query.filter_by(boleto_id=boleto.id, parcel_number=parcel_number).first_or_404(
        description='Parcela não encontrada.'
    )
    new_status = (request.form.get('status') or '').strip()
    alterar_status_parcela(parcela, new_status, _today())
    boleto.updated_at = datetime.utcnow()
    _log_audit('Parcela atualizada', f'Boleto #{boleto.id}, parcela {parcel_number}: {parcela.status_label}')
    db.session.commit()
    flash(f'Parcela {parcel_number} atualizada para {parcela.status_label}.', 'success')
    return redirect(url_for('painel.detalhe_boleto', boleto_id=boleto.id))


# --- Relatórios ---

def _report_filters():
    today = _today()
    start = _parse_date_input(request.args.get('inicio'), 'data inicial') or today - timedelta(days=30)
    end = _parse_date_input(request.args.get('fim'), 'data final') or today
    if start > end:
        raise ValueError('A data inicial deve ser anterior à data final.')
    return {
        'inicio': start,
        'fim': end,
        'status': request.args.get('status') or 'all',
        'client_id': request.args.get('client_id', type=int),
    }


def _report_data(filters):
    budgets = budget_service.get_all(Budget.created_at.desc())
    rows = filtrar_relatorio(budgets, filters['inicio'], filters['fim'], filters['status'], filters['client_id'])
    return rows, totais_relatorio(rows)


@bp.route('/relatorios')
@_login_required
def relatorios():
    filters = _report_filters()
    rows, totals = _report_data(filters) if request.args.get('gerar') == '1' else (None, None)
    return render_template(
        'reports/index.html',
        filters=filters,
        rows=rows,
        totals=totals,
        statuses=BUDGET_STATUSES,
        clients=client_service.get_all(db.func.lower(Client.name)),
    )


@bp.route('/relatorios/pdf')
@_login_required
def relatorio_pdf():
    filters = _report_filters()
    rows, totals = _report_data(filters)
    if not rows:
        flash('Nenhum dado para gerar PDF.', 'danger')
        return redirect(url_for('painel.relatorios', **{k: v for k, v in request.args.items()}))
    html = render_template('print/report.html', filters=filters, rows=rows, totals=totals, generated_at=datetime.utcnow())
    return _pdf_response(html, 'relatorio_orcamentos.pdf')


@bp.route('/logs')
@_login_required
def logs_auditoria():
    entries = AuditLog.query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(200).all()
    return render_template('logs.html', entries=entries)


if __name__ == '__main__':
    create_app().run(host='0.0.0.0', port=5000, debug=True, use_reloader=True)
