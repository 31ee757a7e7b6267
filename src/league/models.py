"""
Database models.

Every table keyed by a UUID string. Rows that can be deleted by an admin
carry a nullable ``deleted_at`` timestamp (see soft_delete.py); match and
Time Attack rows carry a ``version`` counter used for optimistic locking.
"""
import uuid
from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import declared_attr

db = SQLAlchemy()

QUALIFICATION = 'qualification'
FINALS = 'finals'


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC now; SQLite drops tzinfo anyway."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value):
    return value.isoformat() if value else None


class SoftDeleteMixin:
    deleted_at = db.Column(db.DateTime, nullable=True, index=True)


class TimestampMixin:
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class User(TimestampMixin, db.Model):
    __tablename__ = 'user'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='member')

    def to_dict(self):
        return {'id': self.id, 'username': self.username, 'role': self.role}


class Player(SoftDeleteMixin, TimestampMixin, db.Model):
    __tablename__ = 'player'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(120), nullable=False)
    nickname = db.Column(db.String(80), unique=True, nullable=False)
    country = db.Column(db.String(80))
    password = db.Column(db.String(255))
    user_id = db.Column(db.String(36), db.ForeignKey('user.id'), unique=True)

    user = db.relationship('User')

    def to_dict(self):
        # The password hash never leaves the server.
        return {
            'id': self.id,
            'name': self.name,
            'nickname': self.nickname,
            'country': self.country,
            'userId': self.user_id,
            'createdAt': isoformat(self.created_at),
            'deletedAt': isoformat(self.deleted_at),
        }

    def summary(self):
        return {'id': self.id, 'name': self.name, 'nickname': self.nickname}


class Tournament(SoftDeleteMixin, TimestampMixin, db.Model):
    __tablename__ = 'tournament'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    date = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='draft')
    token = db.Column(db.String(64), index=True)
    token_expires_at = db.Column(db.DateTime)
    frozen_stages = db.Column(db.JSON, nullable=False, default=list)

    def to_dict(self, include_token=False):
        data = {
            'id': self.id,
            'name': self.name,
            'date': isoformat(self.date),
            'status': self.status,
            'frozenStages': list(self.frozen_stages or []),
            'createdAt': isoformat(self.created_at),
            'deletedAt': isoformat(self.deleted_at),
        }
        if include_token:
            data['token'] = self.token
            data['tokenExpiresAt'] = isoformat(self.token_expires_at)
        return data


class QualificationMixin(SoftDeleteMixin, TimestampMixin):
    """Columns shared by the BM, MR and GP qualification standings tables."""
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    group = db.Column(db.String(10), nullable=False)
    seeding = db.Column(db.Integer)
    mp = db.Column(db.Integer, nullable=False, default=0)
    wins = db.Column(db.Integer, nullable=False, default=0)
    ties = db.Column(db.Integer, nullable=False, default=0)
    losses = db.Column(db.Integer, nullable=False, default=0)
    points = db.Column(db.Integer, nullable=False, default=0)
    score = db.Column(db.Integer, nullable=False, default=0)

    @declared_attr
    def tournament_id(cls):
        return db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=False, index=True)

    @declared_attr
    def player_id(cls):
        return db.Column(db.String(36), db.ForeignKey('player.id'), nullable=False)

    @declared_attr
    def player(cls):
        return db.relationship('Player')

    @declared_attr.directive
    def __table_args__(cls):
        return (db.UniqueConstraint('tournament_id', 'player_id', name=f'uq_{cls.__tablename__}_player'),)

    def to_dict(self):
        data = {
            'id': self.id,
            'tournamentId': self.tournament_id,
            'playerId': self.player_id,
            'player': self.player.summary() if self.player else None,
            'group': self.group,
            'seeding': self.seeding,
            'mp': self.mp,
            'wins': self.wins,
            'ties': self.ties,
            'losses': self.losses,
            'points': self.points,
            'score': self.score,
        }
        if hasattr(self, 'win_rounds'):
            data['winRounds'] = self.win_rounds
            data['lossRounds'] = self.loss_rounds
        return data


class BMQualification(QualificationMixin, db.Model):
    __tablename__ = 'bm_qualification'
    win_rounds = db.Column(db.Integer, nullable=False, default=0)
    loss_rounds = db.Column(db.Integer, nullable=False, default=0)


class MRQualification(QualificationMixin, db.Model):
    __tablename__ = 'mr_qualification'
    win_rounds = db.Column(db.Integer, nullable=False, default=0)
    loss_rounds = db.Column(db.Integer, nullable=False, default=0)


class GPQualification(QualificationMixin, db.Model):
    __tablename__ = 'gp_qualification'


class MatchMixin(SoftDeleteMixin, TimestampMixin):
    """Columns shared by the BM, MR and GP match tables.

    ``player1_id``/``player2_id`` stay empty on finals slots until bracket
    advancement fills them.
    """
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    match_number = db.Column(db.Integer, nullable=False)
    stage = db.Column(db.String(20), nullable=False, default=QUALIFICATION)
    round = db.Column(db.String(30))
    tv_number = db.Column(db.Integer)
    player1_side = db.Column(db.Integer, nullable=False, default=1)
    player2_side = db.Column(db.Integer, nullable=False, default=2)
    completed = db.Column(db.Boolean, nullable=False, default=False)

    @declared_attr
    def tournament_id(cls):
        return db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=False, index=True)

    @declared_attr
    def player1_id(cls):
        return db.Column(db.String(36), db.ForeignKey('player.id'), nullable=True)

    @declared_attr
    def player2_id(cls):
        return db.Column(db.String(36), db.ForeignKey('player.id'), nullable=True)

    @declared_attr
    def player1(cls):
        return db.relationship('Player', foreign_keys=f'{cls.__name__}.player1_id')

    @declared_attr
    def player2(cls):
        return db.relationship('Player', foreign_keys=f'{cls.__name__}.player2_id')

    @declared_attr.directive
    def __table_args__(cls):
        return (db.UniqueConstraint('tournament_id', 'match_number', 'stage',
                                    name=f'uq_{cls.__tablename__}_number'),)

    def has_player(self, player_id) -> bool:
        return player_id is not None and player_id in (self.player1_id, self.player2_id)

    def _base_dict(self):
        return {
            'id': self.id,
            'tournamentId': self.tournament_id,
            'matchNumber': self.match_number,
            'stage': self.stage,
            'round': self.round,
            'tvNumber': self.tv_number,
            'player1Id': self.player1_id,
            'player2Id': self.player2_id,
            'player1': self.player1.summary() if self.player1 else None,
            'player2': self.player2.summary() if self.player2 else None,
            'player1Side': self.player1_side,
            'player2Side': self.player2_side,
            'completed': self.completed,
            'version': self.version,
        }


class RoundsMatchMixin(MatchMixin):
    """Matches scored by rounds won (Battle Mode arenas, Match Race courses)."""
    score1 = db.Column(db.Integer, nullable=False, default=0)
    score2 = db.Column(db.Integer, nullable=False, default=0)
    rounds = db.Column(db.JSON)
    player1_reported_score1 = db.Column(db.Integer)
    player1_reported_score2 = db.Column(db.Integer)
    player2_reported_score1 = db.Column(db.Integer)
    player2_reported_score2 = db.Column(db.Integer)

    def to_dict(self):
        data = self._base_dict()
        data.update({
            'score1': self.score1,
            'score2': self.score2,
            'rounds': self.rounds,
            'player1ReportedScore1': self.player1_reported_score1,
            'player1ReportedScore2': self.player1_reported_score2,
            'player2ReportedScore1': self.player2_reported_score1,
            'player2ReportedScore2': self.player2_reported_score2,
        })
        return data


class BMMatch(RoundsMatchMixin, db.Model):
    __tablename__ = 'bm_match'
    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {'version_id_col': version}


class MRMatch(RoundsMatchMixin, db.Model):
    __tablename__ = 'mr_match'
    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {'version_id_col': version}


class GPMatch(MatchMixin, db.Model):
    __tablename__ = 'gp_match'
    cup = db.Column(db.String(30))
    points1 = db.Column(db.Integer, nullable=False, default=0)
    points2 = db.Column(db.Integer, nullable=False, default=0)
    races = db.Column(db.JSON)
    player1_reported_points1 = db.Column(db.Integer)
    player1_reported_points2 = db.Column(db.Integer)
    player2_reported_points1 = db.Column(db.Integer)
    player2_reported_points2 = db.Column(db.Integer)
    version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {'version_id_col': version}

    def to_dict(self):
        data = self._base_dict()
        data.update({
            'cup': self.cup,
            'points1': self.points1,
            'points2': self.points2,
            'races': self.races,
            'player1ReportedPoints1': self.player1_reported_points1,
            'player1ReportedPoints2': self.player1_reported_points2,
            'player2ReportedPoints1': self.player2_reported_points1,
            'player2ReportedPoints2': self.player2_reported_points2,
        })
        return data


class TTEntry(SoftDeleteMixin, TimestampMixin, db.Model):
    """A player's Time Attack record for one stage."""
    __tablename__ = 'tt_entry'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tournament_id = db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=False, index=True)
    player_id = db.Column(db.String(36), db.ForeignKey('player.id'), nullable=False)
    stage = db.Column(db.String(20), nullable=False, default=QUALIFICATION)
    lives = db.Column(db.Integer, nullable=False, default=3)
    eliminated = db.Column(db.Boolean, nullable=False, default=False)
    times = db.Column(db.JSON, nullable=False, default=dict)
    total_time = db.Column(db.Integer)
    rank = db.Column(db.Integer)
    qualification_points = db.Column(db.Integer)
    version = db.Column(db.Integer, nullable=False)

    player = db.relationship('Player')

    __table_args__ = (db.UniqueConstraint('tournament_id', 'player_id', 'stage', name='uq_tt_entry_player_stage'),)
    __mapper_args__ = {'version_id_col': version}

    def to_dict(self):
        return {
            'id': self.id,
            'tournamentId': self.tournament_id,
            'playerId': self.player_id,
            'player': self.player.summary() if self.player else None,
            'stage': self.stage,
            'lives': self.lives,
            'eliminated': self.eliminated,
            'times': dict(self.times or {}),
            'totalTime': self.total_time,
            'rank': self.rank,
            'qualificationPoints': self.qualification_points,
            'version': self.version,
        }


class TTPhaseRound(TimestampMixin, db.Model):
    """One course played in a Time Attack elimination phase."""
    __tablename__ = 'tt_phase_round'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tournament_id = db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=False, index=True)
    phase = db.Column(db.String(20), nullable=False)
    round_number = db.Column(db.Integer, nullable=False)
    course = db.Column(db.String(10), nullable=False)
    results = db.Column(db.JSON)
    eliminated_ids = db.Column(db.JSON)
    lives_reset = db.Column(db.Boolean, nullable=False, default=False)
    tie_break_required = db.Column(db.Boolean, nullable=False, default=False)
    submitted_at = db.Column(db.DateTime)

    __table_args__ = (db.UniqueConstraint('tournament_id', 'phase', 'round_number', name='uq_tt_phase_round'),)

    def to_dict(self):
        return {
            'id': self.id,
            'tournamentId': self.tournament_id,
            'phase': self.phase,
            'roundNumber': self.round_number,
            'course': self.course,
            'results': self.results,
            'eliminatedIds': self.eliminated_ids or [],
            'livesReset': self.lives_reset,
            'tieBreakRequired': self.tie_break_required,
            'submittedAt': isoformat(self.submitted_at),
        }


class ScoreEntryLog(db.Model):
    """Append-only record of every score a participant reported."""
    __tablename__ = 'score_entry_log'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tournament_id = db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=False, index=True)
    match_id = db.Column(db.String(36), nullable=False)
    match_type = db.Column(db.String(10), nullable=False)
    player_id = db.Column(db.String(36), db.ForeignKey('player.id'))
    reported_data = db.Column(db.JSON, nullable=False)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(255))
    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'tournamentId': self.tournament_id,
            'matchId': self.match_id,
            'matchType': self.match_type,
            'playerId': self.player_id,
            'reportedData': self.reported_data,
            'ipAddress': self.ip_address,
            'userAgent': self.user_agent,
            'timestamp': isoformat(self.timestamp),
        }


class MatchCharacterUsage(db.Model):
    __tablename__ = 'match_character_usage'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    match_id = db.Column(db.String(36), nullable=False, index=True)
    match_type = db.Column(db.String(10), nullable=False)
    player_id = db.Column(db.String(36), db.ForeignKey('player.id'), nullable=False)
    character = db.Column(db.String(20), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class AuditLog(db.Model):
    __tablename__ = 'audit_log'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36))
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(255))
    action = db.Column(db.String(50), nullable=False, index=True)
    target_id = db.Column(db.String(36))
    target_type = db.Column(db.String(50))
    details = db.Column(db.JSON)
    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'ipAddress': self.ip_address,
            'userAgent': self.user_agent,
            'action': self.action,
            'targetId': self.target_id,
            'targetType': self.target_type,
            'details': self.details,
            'timestamp': isoformat(self.timestamp),
        }
