from datetime import date, timedelta
from decimal import Decimal

import pytest

from models import (
    AuditLog,
    Boleto,
    BoletoParcela,
    Budget,
    BudgetItem,
    Client,
    Employee,
    FixedCost,
    Product,
    VariableCost,
    db,
)


def _text(response):
    return response.get_data(as_text=True)


def _budget_form(client_id, product_id, **overrides):
    data = {
        'client_id': str(client_id),
        'status': 'approved',
        'discount_type': 'percentage',
        'discount_input': '10',
        'shipping_cost': '20,00',
        'tax_amount': '5',
        'delivery_time': '15 dias',
        'payment_method': 'PIX',
        'item_product_id[]': [str(product_id), ''],
        'item_quantity[]': ['2', ''],
    }
    data.update(overrides)
    return data


def _create_budget(auth_client, cliente, produto, **overrides):
    response = auth_client.post('/orcamentos/novo', data=_budget_form(cliente, produto, **overrides))
    assert response.status_code == 302
    return int(response.headers['Location'].rstrip('/').split('/')[-1])


class TestClientes:
    form = {
        'name': 'Carlos Pereira',
        'company_name': '',
        'document': '98765432100',
        'address': 'Av. Brasil, 2000',
        'email': 'Carlos@Example.com',
        'phone': '21988887777',
    }

    def test_create_and_search(self, app, auth_client):
        response = auth_client.post('/clientes/novo', data=self.form, follow_redirects=True)
        assert 'foi salvo com sucesso' in _text(response)

        with app.app_context():
            client = Client.query.filter_by(document='98765432100').one()
            assert client.email == 'carlos@example.com'
            assert client.company_name is None
            assert AuditLog.query.filter_by(action='Cliente cadastrado').count() == 1

        assert 'Carlos Pereira' in _text(auth_client.get('/clientes?q=pereira'))
        assert 'Carlos Pereira' not in _text(auth_client.get('/clientes?q=inexistente'))

    def test_validation_error_is_flashed(self, app, auth_client):
        response = auth_client.post('/clientes/novo', data=dict(self.form, email='invalido'), follow_redirects=True)

        assert 'Email inválido.' in _text(response)
        with app.app_context():
            assert Client.query.count() == 0

    def test_edit_propagates_name_to_budgets(self, app, auth_client, cliente, produto):
        budget_id = _create_budget(auth_client, cliente, produto)

        auth_client.post(f'/clientes/{cliente}/editar', data=dict(self.form, name='Maria S. Oliveira'))

        with app.app_context():
            assert db.session.get(Budget, budget_id).client_name == 'Maria S. Oliveira'

    def test_cannot_delete_client_with_budgets(self, app, auth_client, cliente, produto):
        _create_budget(auth_client, cliente, produto)

        response = auth_client.post(f'/clientes/{cliente}/excluir', follow_redirects=True)

        assert 'Não é possível excluir cliente' in _text(response)
        with app.app_context():
            assert db.session.get(Client, cliente) is not None

    def test_delete_client(self, app, auth_client, cliente):
        auth_client.post(f'/clientes/{cliente}/excluir')

        with app.app_context():
            assert db.session.get(Client, cliente) is None

    def test_missing_client_renders_not_found(self, auth_client):
        response = auth_client.get('/clientes/999')

        assert response.status_code == 404
        assert 'Cliente não encontrado.' in _text(response)


class TestProdutos:
    def test_create_with_brazilian_decimal(self, app, auth_client):
        auth_client.post('/produtos/novo', data={
            'name': 'Tomada 10A',
            'description': 'Tomada padrão brasileiro 10A',
            'sale_price': '1.250,90',
            'cost_price': '800,10',
            'category': 'electrical',
        })

        with app.app_context():
            product = Product.query.filter_by(name='Tomada 10A').one()
            assert product.sale_price == Decimal('1250.90')
            assert product.cost_price == Decimal('800.10')

    def test_filter_by_category_and_detail_margin(self, auth_client, produto):
        assert 'Disjuntor 20A' in _text(auth_client.get('/produtos?category=electrical'))
        assert 'Disjuntor 20A' not in _text(auth_client.get('/produtos?category=hydraulic'))
        assert '40.00%' in _text(auth_client.get(f'/produtos/{produto}'))

    def test_invalid_price_is_flashed(self, auth_client):
        response = auth_client.post('/produtos/novo', data={
            'name': 'Tomada 10A', 'sale_price': 'abc', 'cost_price': '1', 'category': 'electrical',
        }, follow_redirects=True)

        assert 'Valor inválido para preço de venda.' in _text(response)

    def test_delete_keeps_budget_item_snapshot(self, app, auth_client, cliente, produto):
        budget_id = _create_budget(auth_client, cliente, produto)

        auth_client.post(f'/produtos/{produto}/excluir')

        with app.app_context():
            item = BudgetItem.query.filter_by(budget_id=budget_id).one()
            assert item.product_id is None
            assert item.product_name == 'Disjuntor 20A'

    def test_editing_budget_keeps_line_of_deleted_product(self, app, auth_client, cliente, produto):
        budget_id = _create_budget(auth_client, cliente, produto)
        auth_client.post(f'/produtos/{produto}/excluir')
        with app.app_context():
            item_id = BudgetItem.query.filter_by(budget_id=budget_id).one().id

        html = _text(auth_client.get(f'/orcamentos/{budget_id}/editar'))
        assert f'value="snapshot-{item_id}"' in html
        assert 'Disjuntor 20A (excluído do catálogo)' in html

        auth_client.post(f'/orcamentos/{budget_id}/editar', data=_budget_form(
            cliente, produto, discount_type='fixed', discount_input='0',
            **{'item_product_id[]': [f'snapshot-{item_id}', ''], 'item_quantity[]': ['3', '']},
        ))

        with app.app_context():
            budget = db.session.get(Budget, budget_id)
            assert [(i.product_id, i.product_name, i.quantity, i.unit_price) for i in budget.items] == [
                (None, 'Disjuntor 20A', 3, Decimal('100.00')),
            ]
            assert budget.total_amount == Decimal('325.00')


class TestOrcamentos:
    def test_create_computes_totals_and_links_client(self, app, auth_client, cliente, produto):
        budget_id = _create_budget(auth_client, cliente, produto)

        with app.app_context():
            budget = db.session.get(Budget, budget_id)
            assert budget.total_amount == Decimal('205.00')
            assert budget.applied_discount_amount == Decimal('20.00')
            assert budget.material_cost_internal == Decimal('120.00')
            assert [item.quantity for item in budget.items] == [2]
            assert db.session.get(Client, cliente).budget_ids == [budget_id]

    def test_requires_an_item(self, app, auth_client, cliente, produto):
        data = _budget_form(cliente, produto, **{'item_product_id[]': [''], 'item_quantity[]': ['']})

        response = auth_client.post('/orcamentos/novo', data=data, follow_redirects=True)

        assert 'Adicione pelo menos um item ao orçamento.' in _text(response)
        with app.app_context():
            assert Budget.query.count() == 0

    def test_edit_and_status_filter(self, app, auth_client, cliente, produto):
        budget_id = _create_budget(auth_client, cliente, produto)

        auth_client.post(f'/orcamentos/{budget_id}/editar', data=_budget_form(
            cliente, produto, status='rejected', discount_type='fixed', discount_input='0',
        ))

        with app.app_context():
            budget = db.session.get(Budget, budget_id)
            assert budget.status == 'rejected'
            assert budget.total_amount == Decimal('225.00')

        assert f'/orcamentos/{budget_id}"' in _text(auth_client.get('/orcamentos?status=rejected'))
        assert f'/orcamentos/{budget_id}"' not in _text(auth_client.get('/orcamentos?status=approved'))

    def test_delete_unlinks_client(self, app, auth_client, cliente, produto):
        budget_id = _create_budget(auth_client, cliente, produto)

        auth_client.post(f'/orcamentos/{budget_id}/excluir')

        with app.app_context():
            assert db.session.get(Budget, budget_id) is None
            assert BudgetItem.query.count() == 0
            assert db.session.get(Client, cliente).budget_ids == []

    def test_pdf_and_preview(self, auth_client, cliente, produto):
        budget_id = _create_budget(auth_client, cliente, produto)

        preview = auth_client.get(f'/orcamentos/{budget_id}/pdf?preview=1')
        assert preview.mimetype == 'text/html'
        assert 'Disjuntor 20A' in _text(preview)

        response = auth_client.get(f'/orcamentos/{budget_id}/pdf')
        assert response.mimetype == 'application/pdf'
        assert response.headers['Content-Disposition'] == f'inline; filename="orcamento-{budget_id}.pdf"'
        assert response.data.startswith(b'%PDF')


class TestDashboard:
    def test_indicators(self, auth_client, cliente, produto):
        _create_budget(auth_client, cliente, produto)
        _create_budget(auth_client, cliente, produto, status='draft')

        html = _text(auth_client.get('/?range=3'))

        assert 'R$ 205,00' in html
        assert 'Últimos 3 meses' in html

    def test_invalid_range_falls_back(self, auth_client):
        assert auth_client.get('/?range=7').status_code == 200


class TestFuncionarios:
    def test_create(self, app, auth_client):
        auth_client.post('/funcionarios/novo', data={
            'name': 'Ana Costa',
            'position': 'Auxiliar',
            'salary': '2.000,00',
            'admission_date': '10/02/2024',
            'meal_voucher': 'on',
        })

        with app.app_context():
            employee = Employee.query.filter_by(name='Ana Costa').one()
            assert employee.salary == Decimal('2000.00')
            assert employee.admission_date == date(2024, 2, 10)
            assert employee.meal_voucher is True
            assert employee.transport_voucher is False

    def test_detail_shows_estimates(self, auth_client, funcionario):
        html = _text(auth_client.get(f'/funcionarios/{funcionario}'))

        assert 'R$ 240,00' in html
        assert 'R$ 2.595,00' in html
        assert 'Estimativa simplificada' in html

    def test_invalid_date(self, auth_client):
        response = auth_client.post('/funcionarios/novo', data={
            'name': 'Ana Costa', 'position': 'Auxiliar', 'salary': '2000', 'admission_date': '31/31/2024',
        }, follow_redirects=True)

        assert 'Data inválida para data de admissão.' in _text(response)

    @pytest.mark.parametrize('salary,expected', [
        ('3.500', Decimal('3500.00')),
        ('3.500,00', Decimal('3500.00')),
        ('3500.50', Decimal('3500.50')),
        ('R$ 1.234.567,8', Decimal('1234567.80')),
    ])
    def test_salary_formats(self, app, auth_client, salary, expected):
        auth_client.post('/funcionarios/novo', data={
            'name': 'Ana Costa', 'position': 'Auxiliar', 'salary': salary, 'admission_date': '2024-02-10',
        })

        with app.app_context():
            assert Employee.query.filter_by(name='Ana Costa').one().salary == expected

    @pytest.mark.parametrize('salary', ['1,000.50', '1.2345', '3.500.00'])
    def test_ambiguous_salary_is_rejected(self, app, auth_client, salary):
        response = auth_client.post('/funcionarios/novo', data={
            'name': 'Ana Costa', 'position': 'Auxiliar', 'salary': salary, 'admission_date': '2024-02-10',
        }, follow_redirects=True)

        assert 'Valor inválido para salário.' in _text(response)
        with app.app_context():
            assert Employee.query.count() == 0


class TestControleCustos:
    def test_add_and_remove_costs(self, app, auth_client, funcionario):
        auth_client.post('/controle-custos/fixos', data={'description': 'Aluguel', 'amount': '1500', 'category': 'rent'})
        auth_client.post('/controle-custos/variaveis', data={
            'description': 'Combustível',
            'amount': '80,50',
            'category': 'transport',
            'date': '2024-05-10',
            'employee_id': str(funcionario),
        })

        with app.app_context():
            variable = VariableCost.query.one()
            assert variable.employee_name == 'João Lima'
            fixed_id = FixedCost.query.one().id

        html = _text(auth_client.get('/controle-custos'))
        assert 'R$ 1.580,50' in html

        auth_client.post(f'/controle-custos/fixos/{fixed_id}/excluir')
        with app.app_context():
            assert FixedCost.query.count() == 0

    def test_variable_cost_requires_date(self, auth_client):
        response = auth_client.post('/controle-custos/variaveis', data={
            'description': 'Combustível', 'amount': '80', 'category': 'transport', 'date': '',
        }, follow_redirects=True)

        assert 'Data é obrigatória.' in _text(response)


class TestBoletos:
    def _form(self, cliente, **overrides):
        data = {
            'client_id': str(cliente),
            'total_amount': '1.000,00',
            'number_of_installments': '3',
            'initial_due_date': (date.today() + timedelta(days=5)).isoformat(),
            'observations': 'Reforma elétrica',
            'action': 'save',
        }
        data.update(overrides)
        return data

    def _create(self, auth_client, cliente, **overrides):
        response = auth_client.post('/boletos/novo', data=self._form(cliente, **overrides))
        assert response.status_code == 302
        return int(response.headers['Location'].rstrip('/').split('/')[-1])

    def test_create_generates_installments(self, app, auth_client, cliente):
        boleto_id = self._create(auth_client, cliente)

        with app.app_context():
            boleto = db.session.get(Boleto, boleto_id)
            assert [p.value for p in boleto.installments] == [Decimal('333.33'), Decimal('333.33'), Decimal('333.34')]
            assert boleto.client_name == 'Maria Souza'

    def test_preview_does_not_persist(self, app, auth_client, cliente):
        response = auth_client.post('/boletos/novo', data=self._form(cliente, action='preview'))

        assert response.status_code == 200
        assert 'R$ 333,34' in _text(response)
        with app.app_context():
            assert Boleto.query.count() == 0

    def test_past_due_installments_become_overdue_on_read(self, app, auth_client, cliente):
        first_due = (date.today() - timedelta(days=40)).isoformat()
        boleto_id = self._create(auth_client, cliente, number_of_installments='2', initial_due_date=first_due)

        html = _text(auth_client.get(f'/boletos/{boleto_id}'))

        assert 'Vencido' in html
        with app.app_context():
            statuses = [p.status for p in db.session.get(Boleto, boleto_id).installments]
            assert statuses == ['vencido', 'vencido']

    def test_change_installment_status(self, app, auth_client, cliente):
        boleto_id = self._create(auth_client, cliente)

        for numero in (1, 2, 3):
            auth_client.post(f'/boletos/{boleto_id}/parcelas/{numero}/status', data={'status': 'pago'})

        with app.app_context():
            parcelas = db.session.get(Boleto, boleto_id).installments
            assert all(p.payment_date is not None for p in parcelas)

        html = _text(auth_client.get('/boletos?filtro=quitado'))
        assert f'/boletos/{boleto_id}"' in html
        assert f'/boletos/{boleto_id}"' not in _text(auth_client.get('/boletos'))

    def test_forbidden_transition_is_flashed(self, app, auth_client, cliente):
        first_due = (date.today() - timedelta(days=40)).isoformat()
        boleto_id = self._create(auth_client, cliente, number_of_installments='1', initial_due_date=first_due)
        auth_client.get(f'/boletos/{boleto_id}')

        response = auth_client.post(
            f'/boletos/{boleto_id}/parcelas/1/status', data={'status': 'pendente'}, follow_redirects=True,
        )

        assert 'de Vencido para Pendente' in _text(response)

    def test_edit_regenerates_schedule(self, app, auth_client, cliente):
        boleto_id = self._create(auth_client, cliente)
        auth_client.post(f'/boletos/{boleto_id}/parcelas/1/status', data={'status': 'pago'})

        response = auth_client.post(
            f'/boletos/{boleto_id}/editar', data=self._form(cliente, number_of_installments='2'), follow_redirects=True,
        )

        assert 'As parcelas foram recalculadas.' in _text(response)
        with app.app_context():
            parcelas = db.session.get(Boleto, boleto_id).installments
            assert [p.value for p in parcelas] == [Decimal('500.00'), Decimal('500.00')]
            assert all(p.status == 'pendente' for p in parcelas)

    def test_delete_removes_installments(self, app, auth_client, cliente):
        boleto_id = self._create(auth_client, cliente)

        auth_client.post(f'/boletos/{boleto_id}/excluir')

        with app.app_context():
            assert db.session.get(Boleto, boleto_id) is None
            assert BoletoParcela.query.count() == 0

    def test_too_many_installments(self, auth_client, cliente):
        response = auth_client.post(
            '/boletos/novo', data=self._form(cliente, number_of_installments='40'), follow_redirects=True,
        )

        assert 'Máximo de 36 parcelas.' in _text(response)


class TestRelatorios:
    def test_report_totals(self, auth_client, cliente, produto):
        _create_budget(auth_client, cliente, produto)
        _create_budget(auth_client, cliente, produto, status='sent')

        html = _text(auth_client.get('/relatorios?gerar=1'))

        assert 'R$ 205,00' in html
        assert 'R$ 85,00' in html

    def test_pdf_without_data_redirects(self, auth_client):
        response = auth_client.get('/relatorios/pdf', follow_redirects=True)

        assert 'Nenhum dado para gerar PDF.' in _text(response)

    def test_pdf(self, auth_client, cliente, produto):
        _create_budget(auth_client, cliente, produto)

        response = auth_client.get('/relatorios/pdf')

        assert response.mimetype == 'application/pdf'
        assert response.data.startswith(b'%PDF')

    def test_invalid_period(self, auth_client):
        response = auth_client.get('/relatorios?inicio=2024-05-10&fim=2024-05-01', follow_redirects=True)

        assert 'A data inicial deve ser anterior à data final.' in _text(response)


def test_audit_log_page(auth_client, cliente, produto):
    _create_budget(auth_client, cliente, produto)

    html = _text(auth_client.get('/logs'))

    assert 'Orçamento criado' in html
    assert 'Administrador' in html
