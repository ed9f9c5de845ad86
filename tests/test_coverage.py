"""Tests for symbol scanning and coverage counting."""

from textwrap import dedent

import pytest

from threatlink.coverage import FileCoverageInput, Symbol, SymbolScanner, compute_coverage
from threatlink.parser import parse_string


@pytest.fixture
def scanner():
    return SymbolScanner()


class TestSymbolScanner:
    @pytest.mark.parametrize('line,name,kind', [
        ('def login_handler(request):', 'login_handler', 'handler'),
        ('    def check_password(self, pw):', 'check_password', 'method'),
        ('async def fetch_token():', 'fetch_token', 'function'),
        ('export async function verifySession(req) {', 'verifySession', 'function'),
        ('const hashPassword = async (pw) => {', 'hashPassword', 'function'),
        ('func (s *Server) SignPayload(b []byte) error {', 'SignPayload', 'function'),
        ('pub fn decrypt(buf: &[u8]) -> Vec<u8> {', 'decrypt', 'function'),
        ('    public String renderAdmin(User u) {', 'renderAdmin', 'method'),
    ])
    def test_declarations(self, scanner, line, name, kind):
        symbols = scanner.scan('f', [line])
        assert symbols == [Symbol(file='f', line=1, kind=kind, name=name)]

    @pytest.mark.parametrize('line', [
        'x = compute()',
        '    if (isAdmin(user)) {',
        '# def commented_out():',
        '    return render(ctx)',
    ])
    def test_non_declarations(self, scanner, line):
        assert scanner.scan('f', [line]) == []

    @pytest.mark.parametrize('name,relevant', [
        ('check_password', True),
        ('parseJWT', True),
        ('run_query', True),
        ('format_date', False),
        ('render_page', False),
    ])
    def test_security_relevance(self, scanner, name, relevant):
        assert scanner.is_security_relevant(name) is relevant


class TestComputeCoverage:
    SOURCE = '''\
        # @exposes #api to #brute-force
        def login_handler(request):
            pass


        def format_date(d):
            pass

        def check_password(pw):
            pass
    '''

    def test_window_and_misses(self):
        result = parse_string(dedent(self.SOURCE), 'auth.py')
        coverage = compute_coverage([result.coverage])
        assert coverage.total_symbols == 2
        assert coverage.annotated_symbols == 1
        assert coverage.coverage_percent == 50
        assert [(s.name, s.line) for s in coverage.unannotated_critical] == [('check_password', 9)]

    def test_window_is_configurable(self):
        entry = FileCoverageInput(
            file='a.py',
            symbols=[Symbol(file='a.py', line=10, kind='function', name='verify')],
            annotation_lines=[5],
        )
        assert compute_coverage([entry], window=3).annotated_symbols == 0
        assert compute_coverage([entry], window=5).annotated_symbols == 1

    def test_annotation_below_symbol_does_not_count(self):
        entry = FileCoverageInput(
            file='a.py',
            symbols=[Symbol(file='a.py', line=10, kind='function', name='verify')],
            annotation_lines=[11],
        )
        assert compute_coverage([entry]).annotated_symbols == 0

    def test_shielded_symbols_count_as_annotated(self):
        result = parse_string(dedent('''\
            # @shield:begin -- "generated client"
            def build_url(base):
                pass
            def run_query(sql):
                pass
            # @shield:end
        '''), 'gen.py')
        coverage = compute_coverage([result.coverage])
        assert coverage.total_symbols == 2
        assert coverage.annotated_symbols == 2
        assert coverage.coverage_percent == 100
        assert coverage.unannotated_critical == []

    def test_no_symbols_means_zero_percent(self):
        coverage = compute_coverage([FileCoverageInput(file='empty.py')])
        assert coverage.total_symbols == 0
        assert coverage.coverage_percent == 0

    def test_misses_sorted_across_files(self):
        entries = [
            FileCoverageInput(file='b.py', symbols=[Symbol('b.py', 3, 'function', 'auth')]),
            FileCoverageInput(file='a.py', symbols=[
                Symbol('a.py', 9, 'function', 'token'), Symbol('a.py', 2, 'function', 'login'),
            ]),
        ]
        misses = compute_coverage(entries).unannotated_critical
        assert [(s.file, s.line) for s in misses] == [('a.py', 2), ('a.py', 9), ('b.py', 3)]
