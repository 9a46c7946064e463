from datetime import date
from decimal import Decimal

import pytest

from app import create_app
from models import Client, Employee, Product, db

ADMIN_EMAIL = 'admin@gestao.local'
ADMIN_PASSWORD = 'admin123'


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SECRET_KEY': 'test-secret',
        'DEFAULT_ADMIN_EMAIL': ADMIN_EMAIL,
        'DEFAULT_ADMIN_PASSWORD': ADMIN_PASSWORD,
        'MAIL_SUPPRESS_SEND': True,
        'MAIL_DEFAULT_SENDER': 'noreply@gestao.local',
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(client):
    response = client.post('/login', data={'email': ADMIN_EMAIL, 'password': ADMIN_PASSWORD})
    assert response.status_code == 302
    return client


@pytest.fixture
def cliente(app):
    with app.app_context():
        record = Client(
            name='Maria Souza',
            company_name='Souza Reformas',
            document='12345678901',
            address='Rua das Flores, 100',
            email='maria@example.com',
            phone='11999990000',
        )
        db.session.add(record)
        db.session.commit()
        return record.id


@pytest.fixture
def produto(app):
    with app.app_context():
        record = Product(
            name='Disjuntor 20A',
            description='Disjuntor monopolar curva C',
            sale_price=Decimal('100.00'),
            cost_price=Decimal('60.00'),
            category='electrical',
        )
        db.session.add(record)
        db.session.commit()
        return record.id


@pytest.fixture
def funcionario(app):
    with app.app_context():
        record = Employee(
            name='João Lima',
            position='Eletricista',
            salary=Decimal('3000.00'),
            admission_date=date(2023, 3, 1),
            meal_voucher=True,
            transport_voucher=True,
        )
        db.session.add(record)
        db.session.commit()
        return record.id
