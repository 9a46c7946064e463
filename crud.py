from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Generic, Optional, TypeVar
import re

from flask_sqlalchemy.model import Model

from models import BUDGET_STATUS_LABELS, COST_CATEGORY_LABELS, DISCOUNT_TYPE_LABELS, PRODUCT_CATEGORY_LABELS
from utils.financeiro import MAX_PARCELAS

T = TypeVar('T', bound=Model)

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


class GenericCrudService(Generic[T]):
    """Serviço CRUD genérico para modelos SQLAlchemy."""
    def __init__(self, model: type[T], db):
        """Configura o serviço com o modelo e instância de banco."""
        self.model = model
        self.db = db

    def get_all(self, *order_by):
        """Retorna todas as entidades, na ordenação informada."""
        query = self.model.query
        if order_by:
            query = query.order_by(*order_by)
        return query.all()

    def get_by_id(self, entity_id: int) -> Optional[T]:
        """Busca uma entidade pelo identificador primário."""
        return self.db.session.get(self.model, entity_id)

    def get_or_404(self, entity_id: int, description: Optional[str] = None) -> T:
        """Busca uma entidade ou interrompe a requisição com 404."""
        return self.db.get_or_404(self.model, entity_id, description=description)

    def create(self, **kwargs) -> T:
        """Cria e adiciona uma nova entidade à sessão do banco."""
        entity = self.model(**kwargs)
        self.db.session.add(entity)
        return entity

    def update(self, entity: T, **kwargs) -> T:
        """Atualiza atributos de uma entidade existente."""
        for key, value in kwargs.items():
            setattr(entity, key, value)
        return entity

    def delete(self, entity: T):
        """Remove a entidade da sessão."""
        self.db.session.delete(entity)


def _require_min_length(value: Optional[str], size: int, message: str):
    if len((value or '').strip()) < size:
        raise ValueError(message)


@dataclass
class ClientDTO:
    """DTO com dados e validações de cliente."""
    name: str
    document: str
    address: str
    email: str
    phone: str
    company_name: Optional[str] = None

    def validate(self):
        """Valida os campos obrigatórios de cliente."""
        _require_min_length(self.name, 2, 'Nome deve ter pelo menos 2 caracteres.')
        _require_min_length(self.document, 11, 'Documento (CPF/CNPJ) inválido.')
        _require_min_length(self.address, 5, 'Endereço muito curto.')
        if not EMAIL_RE.match((self.email or '').strip()):
            raise ValueError('Email inválido.')
        _require_min_length(self.phone, 10, 'Telefone inválido.')


@dataclass
class ProductDTO:
    """DTO com dados e validações básicas de produto."""
    name: str
    category: str
    sale_price: Decimal
    cost_price: Decimal
    description: Optional[str] = None

    def validate(self):
        """Valida nome, categoria e valores monetários."""
        _require_min_length(self.name, 3, 'Nome do produto deve ter pelo menos 3 caracteres.')
        if self.description and len(self.description.strip()) < 10:
            raise ValueError('Descrição muito curta.')
        if self.category not in PRODUCT_CATEGORY_LABELS:
            raise ValueError('Selecione uma categoria.')
        if self.sale_price <= 0:
            raise ValueError('Preço de venda deve ser positivo.')
        if self.cost_price <= 0:
            raise ValueError('Preço de custo deve ser positivo.')


@dataclass
class BudgetItemDTO:
    """Linha do orçamento: um produto do catálogo ou, quando o produto foi
    excluído, a linha já gravada (`snapshot_item_id`) com nome e preços congelados."""
    product_id: Optional[int]
    quantity: int
    snapshot_item_id: Optional[int] = None


@dataclass
class BudgetDTO:
    """DTO de orçamento: cliente, itens e ajustes de desconto, frete e impostos."""
    client_id: Optional[int]
    items: list[BudgetItemDTO] = field(default_factory=list)
    status: str = 'draft'
    discount_type: str = 'fixed'
    discount_input: Decimal = Decimal('0.00')
    shipping_cost: Decimal = Decimal('0.00')
    tax_amount: Decimal = Decimal('0.00')
    delivery_time: Optional[str] = None
    payment_method: Optional[str] = None

    def validate(self):
        if not self.client_id:
            raise ValueError('Selecione um cliente.')
        if not self.items:
            raise ValueError('Adicione pelo menos um item ao orçamento.')
        for item in self.items:
            if not item.product_id and not item.snapshot_item_id:
                raise ValueError('Selecione um produto.')
            if item.quantity < 1:
                raise ValueError('Quantidade deve ser pelo menos 1.')
        if self.status not in BUDGET_STATUS_LABELS:
            raise ValueError('Selecione um status.')
        if self.discount_type not in DISCOUNT_TYPE_LABELS:
            raise ValueError('Tipo de desconto inválido.')
        if self.discount_input < 0 or self.shipping_cost < 0 or self.tax_amount < 0:
            raise ValueError('Valores monetários não podem ser negativos.')


@dataclass
class EmployeeDTO:
    """DTO com dados e validações de funcionário."""
    name: str
    position: str
    salary: Decimal
    admission_date: Optional[date]
    meal_voucher: bool = False
    transport_voucher: bool = False

    def validate(self):
        _require_min_length(self.name, 3, 'Nome deve ter pelo menos 3 caracteres.')
        _require_min_length(self.position, 3, 'Cargo deve ter pelo menos 3 caracteres.')
        if self.admission_date is None:
            raise ValueError('Data de admissão é obrigatória.')
        if self.salary < 0:
            raise ValueError('Salário não pode ser negativo.')


@dataclass
class CostDTO:
    """DTO para custos fixos e variáveis; `cost_date` só é exigida em custos variáveis."""
    description: str
    amount: Decimal
    category: str
    cost_date: Optional[date] = None
    variable: bool = False

    def validate(self):
        _require_min_length(self.description, 3, 'Descrição deve ter pelo menos 3 caracteres.')
        if self.amount <= 0:
            raise ValueError('Valor deve ser positivo.')
        if self.category not in COST_CATEGORY_LABELS:
            raise ValueError('Selecione uma categoria.')
        if self.variable and self.cost_date is None:
            raise ValueError('Data é obrigatória.')


@dataclass
class BoletoDTO:
    """DTO com os dados que geram o cronograma de parcelas de um boleto."""
    client_id: Optional[int]
    total_amount: Decimal
    number_of_installments: int
    initial_due_date: Optional[date]
    observations: Optional[str] = None

    def validate(self):
        if not self.client_id:
            raise ValueError('Selecione um cliente.')
        if self.total_amount <= 0:
            raise ValueError('Valor total deve ser positivo.')
        if self.number_of_installments < 1:
            raise ValueError('Pelo menos uma parcela.')
        if self.number_of_installments > MAX_PARCELAS:
            raise ValueError(f'Máximo de {MAX_PARCELAS} parcelas.')
        if self.initial_due_date is None:
            raise ValueError('Data de vencimento da 1ª parcela é obrigatória.')
