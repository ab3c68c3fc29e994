import gh_triage as triage


def _issues(make_issue, count=5):
    return [make_issue(n, repo='api' if n % 2 else 'web', title=f'Issue {n}') for n in range(1, count + 1)]


def test_initial_state_and_layout(make_root, make_issue):
    root = make_root([make_issue(1, priority=1), make_issue(2, repo='web')])
    assert root.state.focus == triage.FOCUS_LIST
    assert root.state.context_menu == triage.MENU_DEFAULT
    surface = root.surface
    assert surface.row(0).startswith('*triage* is:open is:issue repo:acme/api repo:acme/web')
    assert surface.row(1).startswith('  [s] sort: +idx')
    assert ' [?] help [^C] exit' in surface.row(1)
    assert surface.row(2).startswith('  [/] filter: ')
    assert surface.row(3).startswith('  [m] set milestone [p] set priority [t] set type [enter] expand')
    assert surface.row(4).startswith('  idx repo  num  title')
    assert surface.row(5).startswith(' >010   api/1    Issue 1')
    assert surface.row(6).startswith('  000   web/2    Issue 2')
    assert surface.row(29).startswith('[:] acme/api blocker')


def test_header_for_org_and_user(make_root):
    assert make_root(org='acme').surface.row(0).startswith('*triage* all open issues for org=acme')
    root = make_root(api=None, target='label:bug')
    assert root.title == 'is:open is:issue label:bug'


def test_header_for_authenticated_user(fake_api):
    root = triage.TriageWindow(fake_api, triage.Config(), surface=triage.Surface(80, 24), spawn=lambda fn: None)
    root.init()
    assert root.title == 'assigned issues for authenticated user'
    assert list(root.fetch_pages()) == []
    assert fake_api.calls == [('by_user',)]


def test_global_focus_keys(make_root, make_issue, press):
    root = make_root(_issues(make_issue))
    press(root, '/')
    assert root.state.focus == triage.FOCUS_FILTER
    press(root, 'escape')
    assert root.state.focus == triage.FOCUS_LIST
    press(root, 's')
    assert root.state.focus == triage.FOCUS_SORT
    press(root, 'escape', '?')
    assert root.state.focus == triage.FOCUS_HELP
    press(root, 'x')
    assert root.state.focus == triage.FOCUS_LIST
    press(root, ':')
    assert root.state.focus == triage.FOCUS_STATUS


def test_unknown_key_is_ignored(make_root, make_issue, press):
    root = make_root(_issues(make_issue))
    assert root.dispatch(triage.KeyEvent(ch='z')) is False
    assert root.state.focus == triage.FOCUS_LIST


def test_filter_box_narrows_and_resets_selection(make_root, make_issue, press):
    root = make_root(_issues(make_issue))
    press(root, 'down', 'down')
    assert root.issue_list.current_index == 2
    press(root, '/', 'w', 'e', 'b')
    assert root.state.filter_text == 'web'
    assert [i.number for i in root.issue_list.current_issues] == [2, 4]
    assert root.issue_list.current_index == 0
    assert root.surface.cursor == (17, 2)
    press(root, 'backspace', 'backspace', 'backspace')
    assert len(root.issue_list.current_issues) == 5
    press(root, 'down')
    assert root.state.focus == triage.FOCUS_LIST


def test_arrow_navigation_between_boxes(make_root, make_issue, press):
    root = make_root(_issues(make_issue))
    press(root, 'up')
    assert root.state.focus == triage.FOCUS_FILTER
    press(root, 'up')
    assert root.state.focus == triage.FOCUS_SORT
    press(root, 'down')
    assert root.state.focus == triage.FOCUS_FILTER
    press(root, 'down')
    assert root.state.focus == triage.FOCUS_LIST
    assert root.state.context_menu == triage.MENU_DEFAULT


def test_escape_closes_submenu_then_resets(make_root, make_issue, press):
    root = make_root(_issues(make_issue))
    press(root, '/', 'a', 'p', 'i', 'down', 'p')
    assert root.state.context_menu == triage.MENU_PRIORITY
    assert root.surface.row(3).startswith('  priority: [1] blocker [2] critical [3] normal [4] low')
    press(root, 'escape')
    assert root.state.context_menu == triage.MENU_DEFAULT
    assert root.state.filter_text == 'api'
    press(root, 'escape')
    assert root.state.filter_text == ''
    assert root.state.sort.text == '+idx'


def test_sort_box_editing(make_root, make_issue, press):
    root = make_root(_issues(make_issue))
    press(root, 's', 'backspace', 'backspace', 'backspace', 'backspace', '-', 'n')
    assert root.state.sort.valid is False
    assert root.surface.get_cell(12, 1) == ('-', 'class:input.invalid')
    press(root, 'u', 'm')
    assert root.state.sort.text == '-num'
    assert root.state.sort.valid is True
    assert [i.number for i in root.issue_list.current_issues] == [5, 4, 3, 2, 1]
    press(root, 'x')
    assert root.state.sort.less is None
    assert [i.number for i in root.issue_list.current_issues] == [1, 2, 3, 4, 5]


def test_list_moves_and_clamps(make_root, make_issue, press):
    root = make_root(_issues(make_issue, 3))
    press(root, 'down', 'down', 'down', 'down')
    assert root.issue_list.current_index == 2
    press(root, 'up', 'up')
    assert root.issue_list.current_index == 0
    assert root.state.focus == triage.FOCUS_LIST


def test_scrolling_quantum_and_bounds(make_root, make_issue, press):
    root = make_root(_issues(make_issue, 50))
    lst = root.issue_list
    assert lst.page_rows == 24
    assert root.surface.get_cell(0, 28)[0] == '↓'
    press(root, 'pagedown')
    assert lst.scroll_index == 10
    assert lst.current_index == 10
    assert root.surface.get_cell(0, 5)[0] == '↑'
    press(root, 'pagedown', 'pagedown', 'pagedown', 'pagedown', 'pagedown')
    assert lst.scroll_index == 40
    press(root, 'pageup', 'pageup', 'pageup', 'pageup', 'pageup', 'pageup')
    assert lst.scroll_index == 0
    assert lst.current_index >= 0


def test_down_past_page_autoscrolls(make_root, make_issue, press):
    root = make_root(_issues(make_issue, 50))
    press(root, *(['down'] * 24))
    assert root.issue_list.current_index == 24
    assert root.issue_list.scroll_index == 10
    press(root, *(['up'] * 15))
    assert root.issue_list.current_index == 9
    assert root.issue_list.scroll_index == 0


def test_scroll_short_list_never_negative(make_root, make_issue, press):
    root = make_root(_issues(make_issue, 4))
    press(root, 'pagedown', 'pageup', 'pageup')
    assert root.issue_list.scroll_index == 0


def test_enter_expands_body(make_root, make_issue, press):
    root = make_root([make_issue(1, body='First line of the body'), make_issue(2)])
    press(root, 'enter')
    assert root.issue_list.expanding is True
    assert root.surface.row(6).strip() == 'https://github.com/acme/api/issues/1'
    assert root.surface.row(7).strip() == 'First line of the body'
    assert root.surface.row(3).startswith('  [m] set milestone [p] set priority [t] set type [enter] collapse')
    press(root, 'enter')
    assert root.surface.row(6).startswith('  000   api/2')


def test_help_overlay_dims_screen(make_root, make_issue, press):
    root = make_root(_issues(make_issue))
    press(root, '?')
    assert 'class:dim' in root.surface.get_cell(50, 20)[1]
    ch, style = root.surface.get_cell(2, 4)
    assert ch == 'i'
    assert 'class:overlay.mark' in style
    assert root.surface.get_cell(3, 3)[0] == '↙'
    press(root, 'q')
    assert root.state.focus == triage.FOCUS_LIST
    assert 'class:dim' not in root.surface.get_cell(50, 20)[1]


def test_alert_takes_focus_and_any_key_dismisses(make_root, make_issue, press):
    root = make_root(_issues(make_issue))
    root.show_error('Error fetching issues: boom')
    assert root.state.focus == triage.FOCUS_ALERT
    assert 'Error fetching issues: boom' in root.surface.row(14)
    press(root, 'down')
    assert root.state.alert == ''
    assert root.state.focus == triage.FOCUS_LIST
    assert root.issue_list.current_index == 0


def test_empty_alert_draws_nothing(make_root, make_issue):
    root = make_root(_issues(make_issue))
    assert all('class:dim' not in root.surface.get_cell(x, 10)[1] for x in range(100))


def test_status_line_commands(make_root, make_issue, press):
    root = make_root(_issues(make_issue))
    quits = []
    root.on_quit = lambda: quits.append(True)
    press(root, ':', 'x', 'y')
    assert root.surface.row(29).startswith(':xy')
    assert root.surface.cursor == (3, 29)
    press(root, 'enter')
    assert root.state.focus == triage.FOCUS_LIST
    assert root.surface.row(29).startswith('[:] Not an editor command: xy')
    press(root, 'down')
    assert 'Not an editor command' not in root.surface.row(29)
    press(root, ':', 'backspace')
    assert root.state.focus == triage.FOCUS_LIST
    press(root, ':', 'w', 'q', 'enter')
    assert quits == [True]
    assert root.closed is True


def test_ctrl_c_quits_from_anywhere(make_root, make_issue, press):
    root = make_root(_issues(make_issue))
    quits = []
    root.on_quit = lambda: quits.append(True)
    press(root, '/', 'ctrl-c')
    assert quits == [True]


def test_resize_redraws_with_new_size(make_root, make_issue):
    root = make_root(_issues(make_issue))
    size = [(60, 12)]
    root.get_size = lambda: size[0]
    root.check_resize()
    assert (root.surface.width, root.surface.height) == (60, 12)
    assert root.surface.row(11).startswith('[:] ')
    assert root.issue_list.page_rows == 6


def test_surface_wide_glyphs_and_bounds():
    surface = triage.Surface(6, 2)
    end = surface.print_line('a界b', 0, 0, 'class:x')
    assert end == 4
    assert surface.row(0) == 'a界b  '
    surface.set_cell(10, 10, 'z')
    surface.print_line('overflow', 3, 1)
    assert surface.row(1) == '   ove'


def test_surface_fragments_place_cursor():
    flushed = []
    surface = triage.Surface(4, 2, on_flush=lambda: flushed.append(True))
    surface.print_line('ab', 0, 0, 'class:input')
    surface.set_cursor(2, 0)
    surface.flush()
    assert surface.frame == [
        ('class:input', 'ab'), ('[SetCursorPosition]', ''), ('', '  '), ('', '\n'), ('', '    '),
    ]
    assert flushed == [True]


def test_cursor_hidden_when_leaving_edit_boxes(make_root, make_issue, press):
    root = make_root(_issues(make_issue))
    assert root.surface.cursor is None
    press(root, 's')
    assert root.surface.cursor is not None
    press(root, 'down')
    assert root.surface.cursor == (14, 2)
    press(root, 'down')
    assert root.surface.cursor is None
    press(root, ':', 'escape')
    assert root.surface.cursor is None
    assert all(style != '[SetCursorPosition]' for style, _ in root.surface.frame)
