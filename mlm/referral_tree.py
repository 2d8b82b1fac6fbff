import logging
from decimal import Decimal
from typing import List, Optional, Dict, Any

from extensions import db
from models import User, Transaction, TransactionStatus, TransactionType
from mlm.config import IncomeConfig


logger = logging.getLogger(__name__)


class ReferralTreeError(Exception):
    pass


class ReferralTreeHelper:
    """
    Sponsor-pointer referral tree. Every walk is bounded:
    uplines by MAX_UPLINE_DEPTH, downlines by MAX_TEAM_DEPTH.
    """

    @staticmethod
    def get_upline_chain(user_id: int, levels: int = IncomeConfig.MAX_UPLINE_DEPTH) -> List[User]:
        """
        Sponsors of ``user_id`` ordered nearest first, at most ``levels`` long.
        Stops at the root or when the chain loops back on itself.
        """
        chain = []
        user = db.session.get(User, user_id)
        if not user:
            return chain

        visited = {user.id}
        sponsor_id = user.sponsor_id
        while sponsor_id and len(chain) < levels:
            if sponsor_id in visited:
                logger.warning(f"Sponsor cycle detected above user {user_id} at {sponsor_id}")
                break
            sponsor = db.session.get(User, sponsor_id)
            if not sponsor:
                break
            chain.append(sponsor)
            visited.add(sponsor.id)
            sponsor_id = sponsor.sponsor_id
        return chain

    @staticmethod
    def is_in_upline(user_id: int, candidate_id: int, levels: int = 100) -> bool:
        return any(u.id == candidate_id for u in ReferralTreeHelper.get_upline_chain(user_id, levels))

    @staticmethod
    def attach_to_sponsor(new_user: User, sponsor: User) -> None:
        """
        Link ``new_user`` under ``sponsor`` and update counters up the bounded upline.
        Runs inside the caller's transaction; no commit here.
        """
        if new_user.id is not None and new_user.id == sponsor.id:
            raise ReferralTreeError("User cannot sponsor themselves")

        if new_user.id is not None and ReferralTreeHelper.is_in_upline(sponsor.id, new_user.id):
            raise ReferralTreeError("Sponsor is already in this user's downline")

        new_user.sponsor_id = sponsor.id
        sponsor.direct_referrals = (sponsor.direct_referrals or 0) + 1

        # Sponsor plus its bounded upline gain one team member
        ancestors = [sponsor] + ReferralTreeHelper.get_upline_chain(
            sponsor.id, IncomeConfig.MAX_UPLINE_DEPTH - 1
        )
        for ancestor in ancestors:
            ancestor.team_size = (ancestor.team_size or 1) + 1

        logger.info(
            f"User {new_user.user_code} attached under {sponsor.user_code}; "
            f"team sizes updated for {len(ancestors)} ancestors"
        )

    @staticmethod
    def count_active_direct_referrals(user_id: int) -> int:
        return User.query.filter_by(sponsor_id=user_id, is_active=True).count()

    @staticmethod
    def get_direct_referrals(user_id: int) -> List[User]:
        return User.query.filter_by(sponsor_id=user_id).order_by(User.created_at.asc()).all()

    @staticmethod
    def get_team(user_id: int, max_level: int = IncomeConfig.MAX_TEAM_DEPTH) -> Dict[str, Any]:
        """
        Downline of ``user_id`` as a nested tree, at most ``max_level`` levels deep,
        with member counts and business volume.
        """
        max_level = max(1, min(max_level, IncomeConfig.MAX_TEAM_DEPTH))
        nodes: Dict[int, Dict[str, Any]] = {}
        roots: List[Dict[str, Any]] = []
        level_counts: Dict[int, int] = {}
        member_ids: List[int] = []
        active_members = 0

        seen = {user_id}
        frontier = [user_id]
        for level in range(1, max_level + 1):
            if not frontier:
                break
            members = (User.query
                       .filter(User.sponsor_id.in_(frontier))
                       .order_by(User.created_at.asc())
                       .all())
            next_frontier = []
            for member in members:
                if member.id in seen:
                    continue
                seen.add(member.id)
                node = {
                    "id": member.id,
                    "userCode": member.user_code,
                    "fullName": member.full_name,
                    "rank": member.rank,
                    "isActive": member.is_active,
                    "level": level,
                    "directReferrals": member.direct_referrals,
                    "joinedAt": member.created_at.isoformat() if member.created_at else None,
                    "children": [],
                }
                nodes[member.id] = node
                if member.sponsor_id == user_id:
                    roots.append(node)
                else:
                    nodes[member.sponsor_id]["children"].append(node)

                member_ids.append(member.id)
                level_counts[level] = level_counts.get(level, 0) + 1
                if member.is_active:
                    active_members += 1
                next_frontier.append(member.id)
            frontier = next_frontier

        return {
            "team": roots,
            "stats": {
                "totalMembers": len(member_ids),
                "activeMembers": active_members,
                "businessVolume": float(ReferralTreeHelper.business_volume(member_ids)),
                "levelCounts": level_counts,
                "maxLevel": max_level,
            },
        }

    @staticmethod
    def business_volume(user_ids: List[int]) -> Decimal:
        """Total completed activation and top-up volume of ``user_ids``."""
        if not user_ids:
            return Decimal("0")
        total = (db.session.query(db.func.coalesce(db.func.sum(Transaction.amount), 0))
                 .filter(
                     Transaction.user_id.in_(user_ids),
                     Transaction.status == TransactionStatus.COMPLETED.value,
                     Transaction.type.in_([
                         TransactionType.ACTIVATION.value,
                         TransactionType.TOPUP.value,
                         TransactionType.AUTO_TOPUP.value,
                     ]),
                 ).scalar())
        return Decimal(str(total or 0))

    @staticmethod
    def get_user_network_summary(user_id: int) -> Optional[Dict[str, Any]]:
        user = db.session.get(User, user_id)
        if not user:
            return None
        upline = ReferralTreeHelper.get_upline_chain(user_id)
        return {
            "userId": user.id,
            "userCode": user.user_code,
            "sponsorCode": user.sponsor.user_code if user.sponsor else None,
            "upline": [
                {"level": level, "userCode": u.user_code, "rank": u.rank, "isActive": u.is_active}
                for level, u in enumerate(upline, start=1)
            ],
            "directReferrals": user.direct_referrals,
            "activeDirectReferrals": user.active_direct_referrals,
            "teamSize": user.team_size,
        }
