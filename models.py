from datetime import datetime
import json

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


PRODUCT_CATEGORIES = [
    ('electrical', 'Elétrica'),
    ('hydraulic', 'Hidráulica'),
    ('carpentry', 'Marcenaria'),
    ('other', 'Outros'),
]

BUDGET_STATUSES = [
    ('draft', 'Rascunho'),
    ('sent', 'Enviado'),
    ('approved', 'Aprovado'),
    ('rejected', 'Rejeitado'),
]

DISCOUNT_TYPES = [
    ('fixed', 'Fixo (R$)'),
    ('percentage', 'Percentual (%)'),
]

COST_CATEGORIES = [
    ('food', 'Alimentação'),
    ('transport', 'Transporte'),
    ('salary', 'Salários'),
    ('rent', 'Aluguel'),
    ('utilities', 'Utilidades'),
    ('marketing', 'Marketing'),
    ('office_supplies', 'Material de Escritório'),
    ('benefits', 'Benefícios'),
    ('other', 'Outros'),
]

PARCELA_STATUSES = [
    ('pendente', 'Pendente'),
    ('pago', 'Pago'),
    ('vencido', 'Vencido'),
    ('cancelado', 'Cancelado'),
]

PRODUCT_CATEGORY_LABELS = dict(PRODUCT_CATEGORIES)
BUDGET_STATUS_LABELS = dict(BUDGET_STATUSES)
DISCOUNT_TYPE_LABELS = dict(DISCOUNT_TYPES)
COST_CATEGORY_LABELS = dict(COST_CATEGORIES)
PARCELA_STATUS_LABELS = dict(PARCELA_STATUSES)


class Client(db.Model):
    """Cliente com dados de contato e a lista desnormalizada de orçamentos."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    company_name = db.Column(db.String(160), nullable=True)
    document = db.Column(db.String(20), nullable=False)
    address = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(30), nullable=False)
    budget_ids_json = db.Column(db.Text, nullable=False, default='[]')
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def budget_ids(self) -> list[int]:
        try:
            return [int(value) for value in json.loads(self.budget_ids_json or '[]')]
        except (TypeError, ValueError):
            return []

    @budget_ids.setter
    def budget_ids(self, values):
        self.budget_ids_json = json.dumps(sorted({int(value) for value in values}))

    @property
    def initials(self):
        return ''.join(part[0] for part in self.name.split()[:2]).upper() if self.name else '--'


class Product(db.Model):
    """Item de catálogo com preço de venda público e preço de custo interno."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    sale_price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    cost_price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    category = db.Column(db.String(30), nullable=False, default='other')
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def category_label(self):
        return PRODUCT_CATEGORY_LABELS.get(self.category, self.category)


class Budget(db.Model):
    """Orçamento de um cliente, com itens, ajustes e custo interno de material."""
    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('client.id'), nullable=False)
    client_name = db.Column(db.String(120), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='draft')
    discount_type = db.Column(db.String(20), nullable=False, default='fixed')
    discount_input = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    applied_discount_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    shipping_cost = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    delivery_time = db.Column(db.String(120), nullable=True)
    payment_method = db.Column(db.String(120), nullable=True)
    total_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    material_cost_internal = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = db.relationship('Client')
    items = db.relationship('BudgetItem', backref='budget', cascade='all, delete-orphan', order_by='BudgetItem.position')

    @property
    def status_label(self):
        return BUDGET_STATUS_LABELS.get(self.status, self.status)

    @property
    def subtotal(self):
        return sum((item.total_price for item in self.items), 0)


class BudgetItem(db.Model):
    """Linha de orçamento com preço e custo congelados no momento do cadastro."""
    id = db.Column(db.Integer, primary_key=True)
    budget_id = db.Column(db.Integer, db.ForeignKey('budget.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    product_id = db.Column(db.Integer, db.ForeignKey('product.id', ondelete='SET NULL'), nullable=True)
    product_name = db.Column(db.String(120), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    unit_cost = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total_price = db.Column(db.Numeric(10, 2), nullable=False, default=0)


class Employee(db.Model):
    """Funcionário com salário bruto e adesão a vale-refeição e vale-transporte."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    position = db.Column(db.String(120), nullable=False)
    salary = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    admission_date = db.Column(db.Date, nullable=False)
    meal_voucher = db.Column(db.Boolean, nullable=False, default=False)
    transport_voucher = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class FixedCost(db.Model):
    """Custo recorrente, como aluguel ou utilidades."""
    id = db.Column(db.Integer, primary_key=True)
    description = db.Column(db.String(120), nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    category = db.Column(db.String(30), nullable=False, default='other')
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def category_label(self):
        return COST_CATEGORY_LABELS.get(self.category, self.category)


class VariableCost(db.Model):
    """Despesa avulsa datada, opcionalmente vinculada a um funcionário."""
    id = db.Column(db.Integer, primary_key=True)
    description = db.Column(db.String(120), nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    date = db.Column(db.Date, nullable=False)
    category = db.Column(db.String(30), nullable=False, default='other')
    employee_id = db.Column(db.Integer, db.ForeignKey('employee.id', ondelete='SET NULL'), nullable=True)
    employee_name = db.Column(db.String(120), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def category_label(self):
        return COST_CATEGORY_LABELS.get(self.category, self.category)


class Boleto(db.Model):
    """Recebível de um cliente dividido em parcelas."""
    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('client.id'), nullable=False)
    client_name = db.Column(db.String(120), nullable=False)
    total_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    number_of_installments = db.Column(db.Integer, nullable=False, default=1)
    initial_due_date = db.Column(db.Date, nullable=False)
    observations = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = db.relationship('Client')
    installments = db.relationship(
        'BoletoParcela',
        backref='boleto',
        cascade='all, delete-orphan',
        order_by='BoletoParcela.parcel_number',
    )


class BoletoParcela(db.Model):
    """Parcela de boleto: número, valor, vencimento, status e data de pagamento."""
    id = db.Column(db.Integer, primary_key=True)
    boleto_id = db.Column(db.Integer, db.ForeignKey('boleto.id'), nullable=False)
    parcel_number = db.Column(db.Integer, nullable=False, default=1)
    value = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    due_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pendente')
    payment_date = db.Column(db.Date, nullable=True)

    __table_args__ = (db.UniqueConstraint('boleto_id', 'parcel_number', name='ux_boleto_parcela_numero'),)

    @property
    def status_label(self):
        return PARCELA_STATUS_LABELS.get(self.status, self.status)


class User(db.Model):
    """Usuário do back-office autenticado por e-mail e senha."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), nullable=False, unique=True)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)


class AuditLog(db.Model):
    """Registro de auditoria de criações, alterações e exclusões feitas pela interface."""
    id = db.Column(db.Integer, primary_key=True)
    user_name = db.Column(db.String(120), nullable=False)
    action = db.Column(db.String(180), nullable=False)
    details = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
