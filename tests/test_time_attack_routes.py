"""
Tests for the Time Attack endpoints, the phase actions and tournament-wide results.
"""
import io

from openpyxl import load_workbook

from league.time_attack import COURSES


def _add(client, tournament_id, player_ids):
    response = client.post(f'/api/tournaments/{tournament_id}/ta', json={'playerIds': player_ids})
    assert response.status_code == 201, response.get_json()
    return response.get_json()['data']['entries']


def _full_times(offset):
    return {course: f'1:{10 + offset:02d}.000' for course in COURSES}


def _qualify(client, tournament_id, player_ids):
    """Enter complete times for every player, the first player fastest."""
    entries = _add(client, tournament_id, player_ids)
    by_player = {e['playerId']: e for e in entries}
    for i, player_id in enumerate(player_ids):
        response = client.put(f'/api/tournaments/{tournament_id}/ta',
                              json={'entryId': by_player[player_id]['id'], 'times': _full_times(i)})
        assert response.status_code == 200, response.get_json()
    return by_player


class TestEntries:

    def test_add_players(self, admin_client, client, tournament, players):
        url = f'/api/tournaments/{tournament["id"]}/ta'
        response = admin_client.post(url, json={'playerIds': players[:3]})
        assert response.status_code == 201
        assert response.get_json()['message'] == 'Added 3 players'

        response = admin_client.post(url, json={'playerId': players[0]})
        assert response.get_json()['message'] == 'Added 0 players'

        data = client.get(url).get_json()['data']
        assert data['stage'] == 'qualification'
        assert len(data['entries']) == 3
        assert data['courses'] == COURSES
        assert data['frozen'] is False

    def test_add_validation(self, admin_client, client, tournament, players):
        url = f'/api/tournaments/{tournament["id"]}/ta'
        assert admin_client.post(url, json={}).status_code == 400
        assert admin_client.post(url, json={'playerIds': ['ghost']}).status_code == 400
        assert client.post(url, json={'playerIds': players[:1]}).status_code == 401

    def test_single_course_time(self, admin_client, tournament, players):
        entry = _add(admin_client, tournament['id'], players[:1])[0]
        url = f'/api/tournaments/{tournament["id"]}/ta'
        response = admin_client.put(url, json={'entryId': entry['id'], 'course': 'MC1', 'time': '1:23.456'})
        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['times'] == {'MC1': '1:23.456'}
        assert data['totalTime'] is None
        assert data['totalTimeDisplay'] == '-'

        response = admin_client.put(url, json={'entryId': entry['id'], 'course': 'MC1', 'time': ''})
        assert response.get_json()['data']['times'] == {}

    def test_time_validation(self, admin_client, tournament, players):
        entry = _add(admin_client, tournament['id'], players[:1])[0]
        url = f'/api/tournaments/{tournament["id"]}/ta'
        response = admin_client.put(url, json={'entryId': entry['id'], 'course': 'MC1', 'time': '1:99.000'})
        assert response.status_code == 400
        assert response.get_json()['details'] == {'field': 'time'}
        response = admin_client.put(url, json={'entryId': entry['id'], 'course': 'XX9', 'time': '1:00.000'})
        assert response.status_code == 400
        assert response.get_json()['details'] == {'field': 'course'}
        assert admin_client.put(url, json={'entryId': entry['id']}).status_code == 400
        assert admin_client.put(url, json={'entryId': 'missing', 'course': 'MC1', 'time': '1:00.000'}).status_code == 404

    def test_complete_times_rank_players(self, admin_client, client, tournament, players):
        _qualify(admin_client, tournament['id'], players[:2])
        entries = client.get(f'/api/tournaments/{tournament["id"]}/ta').get_json()['data']['entries']
        assert [e['playerId'] for e in entries] == players[:2]
        fastest = entries[0]
        assert fastest['rank'] == 1
        assert fastest['totalTime'] == 20 * 70000
        assert fastest['totalTimeDisplay'] == '23:20.000'
        assert fastest['qualificationPoints'] == 1000
        assert entries[1]['qualificationPoints'] == 0

    def test_version_conflict(self, admin_client, tournament, players):
        entry = _add(admin_client, tournament['id'], players[:1])[0]
        url = f'/api/tournaments/{tournament["id"]}/ta'
        first = admin_client.put(url, json={'entryId': entry['id'], 'course': 'MC1', 'time': '1:00.000',
                                            'version': entry['version']})
        assert first.status_code == 200
        response = admin_client.put(url, json={'entryId': entry['id'], 'course': 'MC1', 'time': '1:01.000',
                                               'version': entry['version']})
        assert response.status_code == 409
        body = response.get_json()
        assert body['code'] == 'VERSION_CONFLICT'
        assert body['details']['currentVersion'] > entry['version']

        fresh = first.get_json()['data']['version']
        response = admin_client.put(url, json={'entryId': entry['id'], 'course': 'MC1', 'time': '1:01.000',
                                               'version': fresh})
        assert response.status_code == 200

    def test_freeze(self, admin_client, tournament, players):
        entry = _add(admin_client, tournament['id'], players[:1])[0]
        freeze_url = f'/api/tournaments/{tournament["id"]}/ta/freeze'
        data = admin_client.post(freeze_url, json={'stage': 'qualification'}).get_json()['data']
        assert data == {'frozenStages': ['qualification'], 'stage': 'qualification', 'frozen': True}

        response = admin_client.put(f'/api/tournaments/{tournament["id"]}/ta',
                                    json={'entryId': entry['id'], 'course': 'MC1', 'time': '1:00.000'})
        assert response.status_code == 409
        assert response.get_json()['code'] == 'STAGE_FROZEN'

        data = admin_client.post(freeze_url, json={'stage': 'qualification'}).get_json()['data']
        assert data['frozen'] is False
        assert admin_client.post(freeze_url, json={'stage': 'phase7'}).status_code == 400

    def test_delete(self, admin_client, client, tournament, players):
        by_player = _qualify(admin_client, tournament['id'], players[:2])
        url = f'/api/tournaments/{tournament["id"]}/ta'
        assert admin_client.delete(f'{url}?entryId={by_player[players[0]]["id"]}').status_code == 200
        entries = client.get(url).get_json()['data']['entries']
        assert [e['playerId'] for e in entries] == [players[1]]
        assert entries[0]['rank'] == 1
        assert admin_client.delete(f'{url}?entryId={by_player[players[0]]["id"]}').status_code == 404

        # Adding the player back reuses the deleted entry with cleared times
        again = _add(admin_client, tournament['id'], [players[0]])[0]
        assert again['id'] == by_player[players[0]]['id']
        assert again['times'] == {}

    def test_unknown_stage(self, client, tournament):
        assert client.get(f'/api/tournaments/{tournament["id"]}/ta?stage=bonus').status_code == 400


class TestStandingsAndExport:

    def test_standings_only_ranked(self, admin_client, tournament, players):
        _qualify(admin_client, tournament['id'], players[:2])
        _add(admin_client, tournament['id'], [players[2]])
        response = admin_client.get(f'/api/tournaments/{tournament["id"]}/ta/standings')
        body = response.get_json()
        assert [row['playerId'] for row in body['data']] == players[:2]
        assert response.headers['ETag']

    def test_csv_export(self, admin_client, tournament, players):
        _qualify(admin_client, tournament['id'], players[:2])
        response = admin_client.get(f'/api/tournaments/{tournament["id"]}/ta/export')
        assert response.status_code == 200
        assert 'Spring_Cup_TA_' in response.headers['Content-Disposition']
        lines = response.get_data(as_text=True).lstrip('\ufeff').splitlines()
        assert lines[0] == 'QUALIFICATION'
        assert 'racer1' in lines[2]

    def test_xlsx_export(self, admin_client, tournament, players):
        _qualify(admin_client, tournament['id'], players[:2])
        response = admin_client.get(f'/api/tournaments/{tournament["id"]}/ta/export?format=xlsx')
        workbook = load_workbook(io.BytesIO(response.data))
        assert workbook.sheetnames == ['QUALIFICATION']


class TestPhaseActions:

    def test_phase3_round(self, admin_client, client, tournament, players):
        _qualify(admin_client, tournament['id'], players[:4])
        url = f'/api/tournaments/{tournament["id"]}/ta/phases'

        response = admin_client.post(url, json={'action': 'promote_phase3'})
        assert response.status_code == 201
        body = response.get_json()
        assert body['message'] == 'Promoted 4 players to phase3 with 3 lives'
        assert all(e['lives'] == 3 for e in body['data']['entries'])

        response = admin_client.post(url, json={'action': 'start_round', 'phase': 'phase3'})
        assert response.status_code == 201
        phase_round = response.get_json()['data']
        assert phase_round['roundNumber'] == 1
        assert phase_round['course'] in COURSES

        results = [{'playerId': pid, 'timeMs': 80000 + i * 1000} for i, pid in enumerate(players[:4])]
        response = admin_client.post(url, json={'action': 'submit_results', 'phase': 'phase3',
                                                'roundNumber': 1, 'results': results})
        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['eliminated'] == []
        assert data['remaining'] == 4
        assert data['winner'] is None

        status = client.get(f'{url}?phase=phase3').get_json()['data']
        assert status['status']['currentPhase'] == 'phase3'
        assert status['status']['phase3']['roundsPlayed'] == 1
        lives = {e['playerId']: e['lives'] for e in status['entries']}
        assert lives == {players[0]: 3, players[1]: 3, players[2]: 2, players[3]: 2}
        assert len(status['rounds']) == 1

        response = admin_client.post(url, json={'action': 'submit_results', 'phase': 'phase3',
                                                'roundNumber': 1, 'results': results})
        assert response.status_code == 400

    def test_cancel_round(self, admin_client, client, tournament, players):
        _qualify(admin_client, tournament['id'], players[:2])
        url = f'/api/tournaments/{tournament["id"]}/ta/phases'
        admin_client.post(url, json={'action': 'promote_phase3'})
        admin_client.post(url, json={'action': 'start_round', 'phase': 'phase3'})
        response = admin_client.post(url, json={'action': 'start_round', 'phase': 'phase3'})
        assert response.status_code == 400

        response = admin_client.post(url, json={'action': 'cancel_round', 'phase': 'phase3', 'roundNumber': 1})
        assert response.status_code == 200
        assert client.get(f'{url}?phase=phase3').get_json()['data']['rounds'] == []

    def test_errors(self, admin_client, client, tournament, players):
        _qualify(admin_client, tournament['id'], players[:2])
        url = f'/api/tournaments/{tournament["id"]}/ta/phases'
        response = admin_client.post(url, json={'action': 'promote_phase1'})
        assert response.status_code == 400
        assert response.get_json()['error'] == 'No players available for phase1'

        assert admin_client.post(url, json={'action': 'dance'}).status_code == 400
        assert admin_client.post(url, json={'action': 'start_round', 'phase': 'phase9'}).status_code == 400
        response = admin_client.post(url, json={'action': 'submit_results', 'phase': 'phase3',
                                                'roundNumber': 4, 'results': [{'playerId': players[0]}]})
        assert response.status_code == 404
        response = admin_client.post(url, json={'action': 'submit_results', 'phase': 'phase3', 'roundNumber': 1})
        assert response.status_code == 400

        assert client.post(url, json={'action': 'promote_phase3'}).status_code == 401
        assert client.get(f'{url}?phase=phase9').status_code == 400

    def test_status_before_any_phase(self, client, tournament):
        status = client.get(f'/api/tournaments/{tournament["id"]}/ta/phases').get_json()['data']['status']
        assert status['currentPhase'] is None
        assert status['phase1']['started'] is False
        assert status['phase3']['winner'] is None


class TestTournamentResults:

    def test_overall_ranking(self, admin_client, client, tournament, players):
        _qualify(admin_client, tournament['id'], players[:2])
        rows = client.get(f'/api/tournaments/{tournament["id"]}/overall-ranking').get_json()['data']
        assert len(rows) == 1
        assert rows[0]['playerId'] == players[0]
        assert rows[0]['taQualificationPoints'] == 1000
        assert rows[0]['overallRank'] == 1
        assert rows[0]['totalPoints'] == 1000

    def test_overall_ranking_unknown_tournament(self, client):
        assert client.get('/api/tournaments/missing/overall-ranking').status_code == 404

    def test_full_export(self, admin_client, client, tournament, players):
        _qualify(admin_client, tournament['id'], players[:2])
        response = admin_client.get(f'/api/tournaments/{tournament["id"]}/export')
        assert response.status_code == 200
        assert response.headers['Content-Disposition'].endswith('.xlsx"')
        workbook = load_workbook(io.BytesIO(response.data))
        assert workbook.sheetnames == [
            'TA Qualification', 'TA Finals',
            'BM Qualification', 'BM Matches', 'BM Finals',
            'MR Qualification', 'MR Matches', 'MR Finals',
            'GP Qualification', 'GP Matches', 'GP Finals',
            'Overall Ranking',
        ]
        ranking = workbook['Overall Ranking']
        assert ranking['B2'].value == 'racer1'
        assert ranking['G2'].value == 1000
        assert client.get(f'/api/tournaments/{tournament["id"]}/export').status_code == 401
